"""Text and path heuristics used to label agents."""
from __future__ import annotations

import re
from typing import Iterable, List, Optional, Tuple

SHORT_LABEL_MAX = 32
TRUNCATE_AT = 40
ELLIPSIS = "…"
ROLE_MIN_HITS = 2

SENTENCE_END_RE = re.compile(r"[.!?\n]")

# Order matters: earlier categories win ties.
ROLE_PATTERNS: List[Tuple[str, "re.Pattern[str]"]] = [
    ("Tests", re.compile(r"test|spec|__test__|\.test\.|\.spec\.")),
    ("API", re.compile(r"api|route|endpoint|controller|handler")),
    ("Frontend", re.compile(r"component|page|view|layout|\.tsx|\.jsx|\.vue|\.svelte")),
    ("Database", re.compile(r"migration|schema|model|seed|\.sql|prisma|drizzle")),
    ("Config", re.compile(r"config|\.env|package\.json|tsconfig|webpack|vite")),
    ("Docs", re.compile(r"readme|doc|\.md|guide|spec/")),
    ("DevOps", re.compile(r"docker|ci|deploy|\.yml|\.yaml|terraform|k8s")),
    ("Styles", re.compile(r"\.css|\.scss|tailwind|theme|style")),
]


def summarize_task(text: str) -> str:
    """Turn a delegation description into a short node label.

    "Refactor the API layer to use async handlers" -> "Refactor the API layer to use async…"
    """
    cleaned = re.sub(r"\s+", " ", (text or "").replace("\n", " ")).strip()
    first = SENTENCE_END_RE.split(cleaned, maxsplit=1)[0].strip()
    if len(first) <= SHORT_LABEL_MAX:
        return first
    truncated = first[:TRUNCATE_AT]
    if first[TRUNCATE_AT : TRUNCATE_AT + 1] not in ("", " "):
        # Cut lands inside a word: back up to a word boundary when there is one.
        last_space = truncated.rfind(" ")
        if last_space > 0:
            truncated = truncated[:last_space]
    return truncated.rstrip() + ELLIPSIS


def normalize_path(path: str) -> str:
    return path.replace("\\", "/")


def short_file(path: Optional[str]) -> str:
    if not path:
        return ""
    return normalize_path(path).split("/")[-1]


def infer_role_from_files(paths: Iterable[str]) -> Optional[str]:
    joined = "\n".join(normalize_path(p) for p in paths).lower()
    best: Optional[str] = None
    best_count = 0
    for label, pattern in ROLE_PATTERNS:
        count = len(pattern.findall(joined))
        if count > best_count:
            best, best_count = label, count
    return best if best_count >= ROLE_MIN_HITS else None


def model_label(model: Optional[str], session_id: str) -> Optional[str]:
    if not model or not isinstance(model, str):
        return None
    name = re.sub(r"-\d+$", "", model.replace("claude-", "", 1))
    return f"{name} {session_id[:6]}"
