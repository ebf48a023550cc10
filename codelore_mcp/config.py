from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator


DEFAULT_IGNORE_PATTERNS: List[str] = [
    "**/.git/**",
    "**/node_modules/**",
    "**/__pycache__/**",
    "**/.venv/**",
    "**/venv/**",
    "**/*.log",
    "**/.DS_Store",
    "**/Thumbs.db",
    "**/target/**",
    "**/build/**",
    "**/dist/**",
    "**/.vscode/**",
    "**/.idea/**",
]


# -----------------
# Project definitions
# -----------------


@dataclass(frozen=True)
class WatchDirectory:
    path: str
    patterns: Tuple[str, ...]


@dataclass(frozen=True)
class ProjectApp:
    id: str
    type: str
    path: str
    development_platform: str
    watch: Tuple[WatchDirectory, ...]


@dataclass(frozen=True)
class Project:
    id: str
    name: str
    apps: Tuple[ProjectApp, ...]


def _app_context(app: ProjectApp) -> str:
    return (
        "    ---- App ----\n"
        f"    App id: {app.id},\n"
        f"    App type: {app.type},\n"
        f"    App path: {app.path},\n"
        f"    Development platform: {app.development_platform},\n"
    )


def _project_context(project: Project, app_id: Optional[str]) -> str:
    apps = "".join(_app_context(a) for a in project.apps if app_id is None or a.id == app_id)
    return (
        "    === Project ===\n"
        f"    Project id: {project.id},\n"
        f"    Project name: {project.name}\n"
        "    Apps:\n"
        f"{apps}"
    )


@dataclass(frozen=True)
class ProjectContext:
    """Read-only description of the configured projects and their apps.

    Rendered into prompts for metadata enrichment and query rewriting, and
    used to map ledger entries back to files on disk.
    """

    projects: Tuple[Project, ...]

    def context(self) -> str:
        return "".join(_project_context(p, None) for p in self.projects)

    def project_and_app_context(self, app_id: str) -> Optional[str]:
        for project in self.projects:
            if any(a.id == app_id for a in project.apps):
                return _project_context(project, app_id)
        return None

    def root_directories(self) -> List[str]:
        return sorted({a.path for p in self.projects for a in p.apps})

    def find_app(self, project_id: str, app_id: str) -> Optional[ProjectApp]:
        for project in self.projects:
            if project.id != project_id:
                continue
            for app in project.apps:
                if app.id == app_id:
                    return app
        return None

    def app_root(self, project_id: str, app_id: str) -> Path:
        app = self.find_app(project_id, app_id)
        if app is None:
            raise KeyError(f"Unknown project/app: {project_id}/{app_id}")
        return Path(app.path)

    def resolve_entry_path(self, project_id: str, app_id: str, rel_path: str) -> Path:
        root = self.app_root(project_id, app_id)
        return Path(os.path.normpath(os.path.join(root, rel_path)))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "projects": [
                {
                    "id": p.id,
                    "name": p.name,
                    "apps": [
                        {
                            "id": a.id,
                            "type": a.type,
                            "path": a.path,
                            "development-platform": a.development_platform,
                            "watch": [{"path": w.path, "patterns": list(w.patterns)} for w in a.watch],
                        }
                        for a in p.apps
                    ],
                }
                for p in self.projects
            ]
        }


@dataclass
class CodeloreConfig:
    # Storage
    db_path: str = "codelore.db"
    vector_db_path: str = "codelore_vectors.db"

    # Projects
    projects: List[Project] = field(default_factory=list)

    # Indexing behavior
    ignore_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_IGNORE_PATTERNS))
    max_file_size_mb: int = 5
    chunk_size_tokens: int = 800
    min_chunk_chars: int = 350
    tokenizer_path: str = ""
    index_concurrency: int = 1
    rebuild_on_startup: bool = True
    invalidate_on_startup: bool = False

    # Retrieval (initial context for a question)
    context_results: int = 5
    similarity_threshold: float = 0.5

    # Retrieval (agent tool)
    tool_context_results: int = 4
    tool_similarity_threshold: float = 0.0

    # Embeddings
    embedding_backend: str = "ollama"  # "ollama" | "openai" | "sentence_transformers"
    embedding_model: str = "nomic-embed-text"
    embedding_batch_size: int = 32

    # Chat model
    chat_backend: str = "ollama"  # "ollama" | "openai"
    chat_model: str = "llama3.1"
    chat_timeout_s: float = 300.0

    # Remote endpoints
    ollama_url: str = "http://localhost:11434"
    openai_api_base: str = "https://api.openai.com/v1"
    openai_api_key: str = ""

    def project_context(self) -> ProjectContext:
        return ProjectContext(projects=tuple(self.projects))


class WatchConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str = "."
    patterns: List[str] = ["*"]


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: str
    type: str = "backend"
    path: str
    development_platform: str = "linux"
    watch: List[WatchConfig] = []

    @field_validator("id", "path")
    @classmethod
    def validate_not_blank(cls, value: str) -> str:
        if not str(value).strip():
            raise ValueError("must not be empty")
        return value


class ProjectConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    name: str = ""
    apps: List[AppConfig]


class AllowedConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Storage
    db_path: str = "codelore.db"
    vector_db_path: str = "codelore_vectors.db"

    # Projects
    projects: List[ProjectConfig]

    # Indexing behavior
    ignore_patterns: List[str] = list(DEFAULT_IGNORE_PATTERNS)
    max_file_size_mb: int = 5
    chunk_size_tokens: int = 800
    min_chunk_chars: int = 350
    tokenizer_path: str = ""
    index_concurrency: int = 1
    rebuild_on_startup: bool = True
    invalidate_on_startup: bool = False

    # Retrieval
    context_results: int = 5
    similarity_threshold: float = 0.5
    tool_context_results: int = 4
    tool_similarity_threshold: float = 0.0

    # Embeddings
    embedding_backend: str = "ollama"
    embedding_model: str = "nomic-embed-text"
    embedding_batch_size: int = 32

    # Chat model
    chat_backend: str = "ollama"
    chat_model: str = "llama3.1"
    chat_timeout_s: float = 300.0

    # Remote endpoints
    ollama_url: str = "http://localhost:11434"
    openai_api_base: str = "https://api.openai.com/v1"
    openai_api_key: str = ""

    @field_validator("projects")
    @classmethod
    def validate_projects(cls, value: List[ProjectConfig]) -> List[ProjectConfig]:
        if not value:
            raise ValueError("at least one project must be configured")
        app_ids = [a.id for p in value for a in p.apps]
        if len(app_ids) != len(set(app_ids)):
            raise ValueError("app ids must be unique across projects")
        return value

    @field_validator("chunk_size_tokens", "context_results", "tool_context_results", "index_concurrency")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if int(value) <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("similarity_threshold", "tool_similarity_threshold")
    @classmethod
    def validate_threshold(cls, value: float) -> float:
        if not 0.0 <= float(value) <= 1.0:
            raise ValueError("must be between 0 and 1")
        return value

    @field_validator("chat_model", "embedding_model")
    @classmethod
    def validate_model_name(cls, value: str) -> str:
        if not str(value).strip():
            raise ValueError("model name is required")
        return value

    @field_validator("chat_backend")
    @classmethod
    def validate_chat_backend(cls, value: str) -> str:
        if value not in {"ollama", "openai"}:
            raise ValueError("chat_backend must be 'ollama' or 'openai'")
        return value

    @field_validator("embedding_backend")
    @classmethod
    def validate_embedding_backend(cls, value: str) -> str:
        if value not in {"ollama", "openai", "sentence_transformers"}:
            raise ValueError("embedding_backend must be 'ollama', 'openai' or 'sentence_transformers'")
        return value


def _build_projects(projects: List[ProjectConfig]) -> List[Project]:
    out: List[Project] = []
    for p in projects:
        apps = []
        for a in p.apps:
            root = os.path.realpath(os.path.abspath(os.path.expanduser(a.path)))
            watch = tuple(
                WatchDirectory(path=w.path, patterns=tuple(w.patterns or ["*"])) for w in a.watch
            ) or (WatchDirectory(path=".", patterns=("*",)),)
            apps.append(
                ProjectApp(
                    id=a.id,
                    type=a.type,
                    path=root,
                    development_platform=a.development_platform,
                    watch=watch,
                )
            )
        out.append(Project(id=p.id, name=p.name or p.id, apps=tuple(apps)))
    return out


def config_from_mapping(data: Dict[str, Any]) -> CodeloreConfig:
    """Validate a raw mapping (as read from YAML) into a CodeloreConfig."""
    data = dict(data or {})
    if isinstance(data.get("ignore_patterns"), list):
        ignore_patterns = list(data["ignore_patterns"])
        data["ignore_patterns"] = ignore_patterns + [
            p for p in DEFAULT_IGNORE_PATTERNS if p not in ignore_patterns
        ]

    try:
        validated = AllowedConfig.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc

    raw = validated.model_dump()
    raw["projects"] = _build_projects(validated.projects)
    cfg = CodeloreConfig(**raw)
    cfg.db_path = os.path.abspath(cfg.db_path)
    cfg.vector_db_path = os.path.abspath(cfg.vector_db_path)

    if cfg.openai_api_key == "" and "openai" in (cfg.chat_backend, cfg.embedding_backend):
        env_key = os.environ.get("OPENAI_API_KEY", "")
        if not env_key:
            raise ValueError("Invalid configuration: openai backend selected but no openai_api_key set.")
        cfg.openai_api_key = env_key
    if cfg.min_chunk_chars >= cfg.chunk_size_tokens * 4:
        logging.warning(
            "min_chunk_chars (%s) is large compared to chunk_size_tokens (%s); adjusting.",
            cfg.min_chunk_chars,
            cfg.chunk_size_tokens,
        )
        cfg.min_chunk_chars = max(0, cfg.chunk_size_tokens)
    return cfg


def load_config(path: Optional[str] = None) -> CodeloreConfig:
    """Load config from YAML.

    Default path: ~/.config/codelore/codelore_mcp.yaml

    Example:

        db_path: codelore.db
        projects:
          - id: shop
            name: Shop
            apps:
              - id: shop-backend
                type: backend
                path: /home/you/src/shop-backend
                watch:
                  - path: src/main
                    patterns: ["*.java", "*.yaml"]
    """

    if path is None:
        env_path = os.environ.get("CODELORE_CONFIG_PATH")
        if env_path:
            path = env_path
        else:
            path = os.path.join(
                os.path.expanduser("~"), ".config", "codelore", "codelore_mcp.yaml"
            )

    if not os.path.exists(path):
        raise ValueError(f"Configuration file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid configuration: expected a mapping in {path}")
    return config_from_mapping(data)
