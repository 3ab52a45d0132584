"""
External capabilities consumed by the workflow engine.

The reasoning capability (a language model) and the repository context
capability (a source-control host) live outside this package. Implementations
are injected; this module only defines their interface plus the helpers the
core uses to stay safe against their output.
"""

import json
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Sequence

from .errors import GenerationError

# Always offered to the reasoning capability when present in the tree
KEY_FILES = (
    "package.json",
    "pyproject.toml",
    "requirements.txt",
    "tsconfig.json",
    "Dockerfile",
    "pom.xml",
    "README.md",
)

DEFAULT_MAX_CONTEXT_FILES = 100

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)
_WORD_RE = re.compile(r"[a-z0-9]+")


class ReasoningCapability(ABC):
    """Opaque reasoning capability: given a prompt and context, returns text."""

    @abstractmethod
    async def invoke(self, prompt: str, context: Dict[str, Any]) -> str:
        """Return structured text (JSON expected) or raise ProviderError."""


class RepositoryCapability(ABC):
    """Read access to a repository on a source-control host."""

    @abstractmethod
    async def get_file_tree(self, owner: str, repo: str, branch: str) -> List[str]:
        """Return every file path in the repository at ``branch``."""

    @abstractmethod
    async def read_files(
        self, owner: str, repo: str, branch: str, paths: Sequence[str]
    ) -> Dict[str, str]:
        """Return the content of the requested paths."""


def parse_json_payload(text: str) -> Dict[str, Any]:
    """
    Extract a JSON object from model output.

    Accepts bare JSON, JSON in a fenced code block, or JSON surrounded by
    prose. Anything else is a GenerationError.
    """
    if not isinstance(text, str) or not text.strip():
        raise GenerationError("Reasoning capability returned an empty response")

    candidates = [text.strip()]
    fenced = _FENCE_RE.search(text)
    if fenced:
        candidates.insert(0, fenced.group(1).strip())
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start : end + 1])

    for candidate in candidates:
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload
    raise GenerationError("Reasoning capability returned malformed JSON")


def _tokens(text: str) -> set:
    return {word for word in _WORD_RE.findall(text.lower()) if len(word) > 2}


def select_context_files(
    tree: Sequence[str], intent: str, cap: int = DEFAULT_MAX_CONTEXT_FILES
) -> List[str]:
    """
    Choose a bounded subset of repository files relevant to ``intent``.

    Key project files come first, then files ranked by how many intent words
    appear in their path, shallower paths winning ties. Never returns more than
    ``cap`` paths.
    """
    if cap <= 0:
        return []

    intent_words = _tokens(intent)
    key_files = [path for path in tree if path.rsplit("/", 1)[-1] in KEY_FILES]
    key_set = set(key_files)

    ranked = []
    for path in tree:
        if path in key_set:
            continue
        overlap = len(intent_words & _tokens(path))
        if overlap:
            ranked.append((-overlap, path.count("/"), path))
    ranked.sort()

    selected = sorted(key_files, key=lambda p: (p.count("/"), p))
    selected.extend(path for _, _, path in ranked)
    return selected[:cap]
