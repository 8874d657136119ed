from __future__ import annotations

import re
import secrets
import string

# One directory name: lowercase alnum and inner hyphens, at most 63 chars.
SEGMENT_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
SUFFIX_LEN = 6
MAX_ID_LEN = 63
MAX_NAME_ATTEMPTS = 100
FALLBACK_BASE = "deploy"

_SUFFIX_ALPHABET = string.digits + string.ascii_lowercase
_SUFFIX_RE = re.compile(rf"^[{_SUFFIX_ALPHABET}]{{{SUFFIX_LEN}}}$")
_SEPARATORS_RE = re.compile(r"[^a-z0-9]+")


def slugify_token(value: str) -> str:
    return _SEPARATORS_RE.sub("-", value.lower()).strip("-")


def is_safe_path_segment(value: str) -> bool:
    """True when ``value`` can be used verbatim as one directory name."""
    return SEGMENT_RE.fullmatch(value) is not None


def generate_suffix6() -> str:
    return "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(SUFFIX_LEN))


def generate_deployment_id(name: str, *, suffix: str | None = None) -> str:
    if suffix is None:
        suffix = generate_suffix6()
    elif not _SUFFIX_RE.fullmatch(suffix):
        raise ValueError(f"suffix must be {SUFFIX_LEN} lowercase base36 characters")

    room = MAX_ID_LEN - SUFFIX_LEN - 1
    base = slugify_token(name)[:room].rstrip("-") or FALLBACK_BASE
    deployment_id = f"{base}-{suffix}"
    if not is_safe_path_segment(deployment_id):
        raise ValueError(f"{deployment_id!r} is not a safe path segment")
    return deployment_id


def candidate_names(name: str):
    """Yield ``name`` then ``name-1``, ``name-2``... for clash resolution."""
    yield name
    for attempt in range(1, MAX_NAME_ATTEMPTS):
        yield f"{name}-{attempt}"
