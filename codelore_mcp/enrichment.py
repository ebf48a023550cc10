from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from .chunking import append_distinct
from .errors import MetadataExtractionError
from .generation import ChatMessage, ChatModel, assistant, user


METADATA_PROMPT_TEMPLATE = """You are an assistant that generates structured metadata for a source code knowledge base used for retrieval augmented generation.

Each document is one source code file. The file will be split into several chunks, so the metadata must describe the ENTIRE file and be identical for every chunk of it.

Rules:
1. Output ONLY a valid JSON array of objects, with no comments or explanations.
2. Each object has exactly two keys: "key" and "value".
3. Every chunk gets a "chunk_number" field automatically; do not include it.
4. Keep all values short, factual and on a single line.
5. Use lowercase for all keys.

Keys ("responsibility" is mandatory, the others are optional, add more if relevant):
- "language": e.g. "java", "python", "yaml"
- "entities": comma-separated names of classes, functions or variables
- "package": package or module path
- "responsibility": one line describing the purpose of the file
- "dependencies": comma-separated imports or libraries
- "annotations": comma-separated annotations or decorators
- "type": e.g. "controller", "service", "model", "config", "util"

Output format example:
[
  {{ "key": "language", "value": "java" }},
  {{ "key": "entities", "value": "FileStorageService, saveFile" }},
  {{ "key": "package", "value": "com.example.project.service" }},
  {{ "key": "responsibility", "value": "Handles file storage operations" }},
  {{ "key": "dependencies", "value": "org.springframework.stereotype.Service" }},
  {{ "key": "annotations", "value": "Service" }},
  {{ "key": "type", "value": "service" }}
]

If the language or role cannot be inferred with confidence, make your best guess.
Keys and values must not be null. Respond ONLY with the JSON array: no markdown, no code fences.

### CODE CONTEXT START
{project_context}
### CODE CONTEXT END
Source code filename: {filename}
### SOURCE CODE TO ANALYZE START
{source_code}
### SOURCE CODE TO ANALYZE END
"""

CORRECTION_MESSAGE = "Your previous response was not valid JSON. Please correct it."
RESPONSIBILITY_KEY = "responsibility"


def build_metadata_prompt(project_context: str, filename: str, source_code: str) -> str:
    return METADATA_PROMPT_TEMPLATE.format(
        project_context=project_context,
        filename=filename,
        source_code=source_code,
    )


def parse_metadata(raw: str) -> Dict[str, str]:
    """Parse a JSON array of ``{"key", "value"}`` objects into a mapping.

    Keys are lowercased; entries with a null key or value are dropped and
    repeated keys keep every distinct value, comma-joined in order.

    Raises ValueError when ``raw`` is not such an array.
    """
    data: Any = json.loads(raw)
    if not isinstance(data, list):
        raise ValueError("Expected a JSON array of key/value objects.")
    out: Dict[str, str] = {}
    for item in data:
        if not isinstance(item, dict):
            raise ValueError(f"Expected a key/value object, got {type(item).__name__}.")
        key = item.get("key")
        value = item.get("value")
        if key is None or value is None:
            continue
        key = str(key).strip().lower()
        if not key:
            continue
        value = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
        out[key] = append_distinct(out.get(key), value)
    return out


def _with_responsibility(metadata: Dict[str, str], filename: str) -> Dict[str, str]:
    if not metadata.get(RESPONSIBILITY_KEY, "").strip():
        logging.warning("Model returned no responsibility for %s.", filename)
        metadata[RESPONSIBILITY_KEY] = "unknown"
    return metadata


class MetadataEnricher:
    """Asks a chat model for whole-file metadata.

    An unparsable answer is retried exactly once, with the bad answer and a
    correction request appended to the original prompt.
    """

    def __init__(self, model: ChatModel) -> None:
        self._model = model

    async def get_metadata_for_source_code(
        self, project_context: str, filename: str, source_code: str
    ) -> Dict[str, str]:
        prompt = user(build_metadata_prompt(project_context, filename, source_code))
        first = await self._model.prompt([prompt])
        try:
            return _with_responsibility(parse_metadata(first or ""), filename)
        except ValueError:
            logging.info("Metadata response for %s was not valid JSON; retrying once.", filename)

        messages: List[ChatMessage] = [prompt, assistant(first or ""), user(CORRECTION_MESSAGE)]
        second: Optional[str] = await self._model.prompt(messages)
        try:
            return _with_responsibility(parse_metadata(second or ""), filename)
        except ValueError as exc:
            logging.warning("Unable to generate metadata for %s.\nJSON:\n%s", filename, second)
            raise MetadataExtractionError(
                f"Model returned invalid metadata for {filename}: {exc}",
                raw_response=second,
            ) from exc
