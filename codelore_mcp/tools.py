"""Agent tools: file access inside the project roots, project listing and RAG search."""

from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import ProjectContext
from .errors import PathSecurityError
from .retrieval import Retriever
from .security import PathContext

ToolHandler = Callable[..., Awaitable["ToolResponse"]]


@dataclass(slots=True, frozen=True)
class ToolDispatchError(Exception):
    """Represents deterministic tool dispatch failures."""

    code: str
    message: str


@dataclass(frozen=True)
class ToolResponse:
    success: bool
    error_message: Optional[str] = None
    data: Any = None

    def as_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "error_message": self.error_message, "data": self.data}


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    input_schema: Dict[str, Any]
    handler: ToolHandler


@dataclass(slots=True)
class ToolRegistry:
    """In-memory tool registry preserving deterministic insertion order."""

    _tools: Dict[str, ToolDescriptor] = field(default_factory=dict)

    def register(self, descriptor: ToolDescriptor) -> None:
        if descriptor.name in self._tools:
            raise ValueError(f"Tool already registered: {descriptor.name}")
        self._tools[descriptor.name] = descriptor
        logging.info("Registered tool: %s", descriptor.name)

    def get(self, name: str) -> Optional[ToolDescriptor]:
        return self._tools.get(name)

    def names(self) -> tuple[str, ...]:
        return tuple(self._tools.keys())

    def descriptors(self) -> tuple[ToolDescriptor, ...]:
        return tuple(self._tools.values())

    async def dispatch(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> ToolResponse:
        """Run a tool by name; a failing handler yields a failed ToolResponse."""
        descriptor = self.get(name)
        if descriptor is None:
            raise ToolDispatchError(code="UNKNOWN_TOOL", message=f"Unknown tool: {name}")
        try:
            return await descriptor.handler(**(arguments or {}))
        except Exception as exc:
            message = f"The tool '{name}' execution failed. Error message: {exc}"
            logging.warning("Tool execution failed: %s", message)
            return ToolResponse(success=False, error_message=message)


def _string_arg(name: str, description: str) -> Dict[str, Any]:
    return {name: {"type": "string", "description": description}}


def _schema(*props: Dict[str, Any]) -> Dict[str, Any]:
    properties: Dict[str, Any] = {}
    for p in props:
        properties.update(p)
    return {"type": "object", "properties": properties, "required": list(properties)}


GET_FILE_INFOS_DESCRIPTION = """Lists the files of a directory.
Each item has "name" (file name with extension), "path" (absolute path),
"size" (bytes, -1 for directories or when the size cannot be read) and "dir".
The directory must be one of get_root_directories or below it."""

GET_FILE_CONTENT_DESCRIPTION = """Reads a local text file (source code, configuration,
documentation) as UTF-8. Takes the absolute path of the file. Never modifies files."""

WRITE_FILE_DESCRIPTION = """Creates a file or overwrites an existing one with the given UTF-8 content.
Missing parent directories are created. Use only when asked to create or change a file;
files outside the project directories cannot be written."""

GET_ROOT_DIRECTORIES_DESCRIPTION = """Lists the root directories the file tools may access.
Each root is an application directory of a configured project; its subdirectories are
accessible too."""

GET_PROJECTS_DESCRIPTION = """Lists the configured projects and their applications
(id, type, path, development platform)."""

GET_ANY_CONTEXT_DATA_DESCRIPTION = """Retrieves the most relevant content of the project knowledge base
(source code, configuration, documentation) for a question, using semantic similarity search.
Results are separated by --- lines. An empty result means nothing relevant was found.
Call this first when a question refers to the code, configuration or internal logic of a project."""


class FileTools:
    """File tools confined to the app root directories."""

    def __init__(self, path_context: PathContext, project_context: ProjectContext) -> None:
        self.path_context = path_context
        self.project_context = project_context

    async def get_file_infos(self, dir: str) -> ToolResponse:
        logging.info("Start listing files from directory %s", dir)
        try:
            entries = self.path_context.list_dir(dir)
        except (OSError, PathSecurityError) as exc:
            logging.error("Error listing files from directory %s: %s", dir, exc)
            return ToolResponse(success=False, error_message=str(exc))
        data: List[Dict[str, Any]] = []
        for p in entries:
            is_dir = p.is_dir()
            size = -1
            if not is_dir:
                try:
                    size = os.lstat(p).st_size
                except OSError:
                    logging.warning("Could not read file size for %s", p, exc_info=True)
            data.append({"name": p.name, "path": str(p), "size": size, "dir": is_dir})
        return ToolResponse(success=True, data=data)

    async def get_file_content(self, file_path: str) -> ToolResponse:
        logging.info("Reading file content: %s", file_path)
        try:
            return ToolResponse(success=True, data=self.path_context.read_text(file_path))
        except (OSError, UnicodeDecodeError, PathSecurityError) as exc:
            logging.error("Error retrieving file content from %s: %s", file_path, exc)
            return ToolResponse(success=False, error_message=str(exc))

    async def write_file(self, file_path: str, content: str) -> ToolResponse:
        logging.info("Writing file: %s", file_path)
        try:
            self.path_context.write_text(file_path, content)
        except (OSError, PathSecurityError) as exc:
            logging.error("Error writing file %s: %s", file_path, exc)
            return ToolResponse(success=False, error_message=f"Error writing file: {exc}")
        return ToolResponse(success=True, data="File saved successfully.")

    async def get_root_directories(self) -> ToolResponse:
        logging.info("Returning list of root directories")
        return ToolResponse(success=True, data=self.project_context.root_directories())

    async def get_projects(self) -> ToolResponse:
        return ToolResponse(success=True, data=self.project_context.as_dict())


class RagTools:
    def __init__(self, retriever: Retriever) -> None:
        self.retriever = retriever

    async def get_any_context_data(self, query: str) -> ToolResponse:
        try:
            data = await self.retriever.search_context(query)
        except Exception as exc:
            logging.error("Error retrieving RAG context for question: %s", query, exc_info=True)
            return ToolResponse(success=False, error_message=str(exc))
        return ToolResponse(success=True, data=data)


def build_tool_registry(
    *,
    project_context: ProjectContext,
    path_context: PathContext,
    retriever: Retriever,
) -> ToolRegistry:
    files = FileTools(path_context, project_context)
    rag = RagTools(retriever)
    registry = ToolRegistry()
    registry.register(
        ToolDescriptor(
            name="get_file_infos",
            description=GET_FILE_INFOS_DESCRIPTION,
            input_schema=_schema(_string_arg("dir", "Directory to list")),
            handler=files.get_file_infos,
        )
    )
    registry.register(
        ToolDescriptor(
            name="get_file_content",
            description=GET_FILE_CONTENT_DESCRIPTION,
            input_schema=_schema(_string_arg("file_path", "Absolute path to the file")),
            handler=files.get_file_content,
        )
    )
    registry.register(
        ToolDescriptor(
            name="write_file",
            description=WRITE_FILE_DESCRIPTION,
            input_schema=_schema(
                _string_arg("file_path", "Absolute path of the file to create or overwrite"),
                _string_arg("content", "Text content to write"),
            ),
            handler=files.write_file,
        )
    )
    registry.register(
        ToolDescriptor(
            name="get_root_directories",
            description=GET_ROOT_DIRECTORIES_DESCRIPTION,
            input_schema=_schema(),
            handler=files.get_root_directories,
        )
    )
    registry.register(
        ToolDescriptor(
            name="get_projects",
            description=GET_PROJECTS_DESCRIPTION,
            input_schema=_schema(),
            handler=files.get_projects,
        )
    )
    registry.register(
        ToolDescriptor(
            name="get_any_context_data",
            description=GET_ANY_CONTEXT_DATA_DESCRIPTION,
            input_schema=_schema(_string_arg("query", "The question to retrieve context for")),
            handler=rag.get_any_context_data,
        )
    )
    return registry
