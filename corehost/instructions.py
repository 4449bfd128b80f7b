"""
Core Host - Instruction Policy Evaluator

Folder-local INSTRUCTIONS.md files may start with a YAML front-matter block:

    ---
    blockPaths:
      - "generated/**"
    allowPaths: ["*.ts", "components/**"]
    invariants: |
      Keep the public API stable.
    compatibilityNotes: Requires renderer >= 2.
    ---

For a target path, every INSTRUCTIONS.md from the project root down to the
target's directory applies. blockPaths and allowPaths are enforced (any
reason blocks the write); invariants and compatibility notes are advisory
text surfaced to merge logic and pack manifests.
"""

from __future__ import annotations

import logging
import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable, List, Optional, Pattern, Sequence, Union

import yaml

from .models import InstructionEvaluation, InstructionFile, InstructionPolicy, PathClassification
from .path_utils import normalize_absolute_path, relative_to_root, to_posix
from .zones import ZoneManager

logger = logging.getLogger(__name__)

INSTRUCTIONS_FILE = "INSTRUCTIONS.md"

FRONT_MATTER_RE = re.compile(r"^---\s*\n([\s\S]*?)\n---\s*\n?")


# =============================================================================
# Glob Compilation
# =============================================================================

def _tokenize_glob(pattern: str) -> List[str]:
    """Split a glob into ``**``, ``*``, ``?`` and literal-character tokens."""
    tokens: List[str] = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**", i):
            tokens.append("**")
            i += 2
        else:
            tokens.append(pattern[i])
            i += 1
    return tokens


@lru_cache(maxsize=512)
def compile_glob(pattern: str) -> Pattern[str]:
    """
    Compile a path glob to an anchored regex.

    ``**`` matches any run including ``/``, ``*`` any run excluding ``/``,
    ``?`` exactly one character; everything else is literal.
    """
    parts: List[str] = []
    for token in _tokenize_glob(to_posix(pattern)):
        if token == "**":
            parts.append(".*")
        elif token == "*":
            parts.append("[^/]*")
        elif token == "?":
            parts.append(".")
        else:
            parts.append(re.escape(token))
    return re.compile("^" + "".join(parts) + "$", re.DOTALL)


def match_any_glob(patterns: Sequence[str], relative_path: str) -> bool:
    if not patterns:
        return False
    normalized = to_posix(relative_path)
    return any(compile_glob(pattern).match(normalized) for pattern in patterns)


# =============================================================================
# Front Matter
# =============================================================================

def coerce_string_list(value: Any) -> List[str]:
    """Coerce a front-matter value to a list of non-empty trimmed strings."""
    if not value:
        return []
    if isinstance(value, list):
        items: Iterable[Any] = value
    elif isinstance(value, str):
        items = value.split("\n")
    else:
        return [str(value)]
    return [s for s in (str(item).strip() for item in items) if s]


def parse_front_matter(markdown: str) -> InstructionPolicy:
    """Parse the policy block; anything malformed yields an empty policy."""
    match = FRONT_MATTER_RE.match(markdown)
    if not match:
        return InstructionPolicy()
    try:
        parsed = yaml.safe_load(match.group(1))
    except yaml.YAMLError as e:
        logger.debug(f"[Instructions] Unparsable front matter: {e}")
        return InstructionPolicy()
    if not isinstance(parsed, dict):
        return InstructionPolicy()

    def field_value(camel: str, snake: str) -> Any:
        return parsed.get(camel, parsed.get(snake))

    return InstructionPolicy(
        block_paths=coerce_string_list(field_value("blockPaths", "block_paths")),
        allow_paths=coerce_string_list(field_value("allowPaths", "allow_paths")),
        invariants=coerce_string_list(field_value("invariants", "invariants")),
        compatibility_notes=coerce_string_list(
            field_value("compatibilityNotes", "compatibility_notes")
        ),
    )


def load_instruction_file(file_path: Union[str, Path]) -> Optional[InstructionFile]:
    path = Path(file_path)
    if not path.is_file():
        return None
    try:
        markdown = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.debug(f"[Instructions] Skipping unreadable {path}: {e}")
        return None
    return InstructionFile(
        file_path=str(path),
        directory=str(path.parent),
        markdown=markdown,
        policy=parse_front_matter(markdown),
    )


# =============================================================================
# Instruction Manager
# =============================================================================

class InstructionManager:
    """Collects and evaluates the INSTRUCTIONS.md chain governing a path."""

    def __init__(self, zone_manager: ZoneManager):
        self.zone_manager = zone_manager

    def collect_instruction_files(self, absolute_path: str) -> List[InstructionFile]:
        """
        Walk from the target's directory up to the project root.

        Targets outside the project stop at the filesystem root. Returned
        files are ordered root-first.
        """
        root = normalize_absolute_path(self.zone_manager.project_root)
        current = os.path.dirname(normalize_absolute_path(absolute_path))
        visited = set()
        found: List[InstructionFile] = []

        while current not in visited:
            visited.add(current)
            loaded = load_instruction_file(os.path.join(current, INSTRUCTIONS_FILE))
            if loaded is not None:
                found.append(loaded)
            if current == root:
                break
            parent = os.path.dirname(current)
            if parent == current:
                break
            current = parent

        found.reverse()
        return found

    @staticmethod
    def evaluate_policies(
        instruction_files: List[InstructionFile],
        classification: PathClassification,
    ) -> InstructionEvaluation:
        block_reasons: List[str] = []
        invariants: List[str] = []
        compatibility_notes: List[str] = []

        for file in instruction_files:
            rel = relative_to_root(file.directory, classification.absolute_path)
            rel_path = to_posix(classification.zone_relative_path if rel.startswith("..") else rel)
            source = os.path.join(file.directory, INSTRUCTIONS_FILE)

            policy = file.policy
            if policy.block_paths and match_any_glob(policy.block_paths, rel_path):
                block_reasons.append(f'Blocked by {source} (blockPaths matched "{rel_path}").')
            if policy.allow_paths and not match_any_glob(policy.allow_paths, rel_path):
                block_reasons.append(f'Blocked by {source} (path not allowlisted: "{rel_path}").')

            invariants.extend(policy.invariants)
            compatibility_notes.extend(policy.compatibility_notes)

        return InstructionEvaluation(
            blocked=bool(block_reasons),
            block_reasons=block_reasons,
            invariants=invariants,
            compatibility_notes=compatibility_notes,
            classification=classification,
            instruction_files=instruction_files,
        )

    def get_instructions_for_path(self, input_path: Union[str, Path]) -> InstructionEvaluation:
        classification = self.zone_manager.classify_path(input_path)
        files = self.collect_instruction_files(classification.absolute_path)
        evaluation = self.evaluate_policies(files, classification)
        if evaluation.blocked:
            logger.debug(
                f"[Instructions] {classification.virtual_path} blocked: "
                f"{'; '.join(evaluation.block_reasons)}"
            )
        return evaluation

    @staticmethod
    def summarize_instruction_files(instruction_files: List[InstructionFile]) -> List[str]:
        return [file.file_path for file in instruction_files]
