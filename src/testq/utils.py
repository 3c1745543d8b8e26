from __future__ import annotations

import hashlib
import re
from collections.abc import Iterable

EXAMPLE_INDEX_REGEX = re.compile(r"\[[^\]]*\]$")
NODE_SEPARATOR = "::"


def timings_signature(jobs: Iterable[str]) -> str:
    """Fingerprint of a timing set: sha256 over its sorted, de-duplicated job ids."""
    hasher = hashlib.sha256()
    for job in sorted(set(jobs)):
        hasher.update(job.encode("utf-8"))
        hasher.update(b"\n")
    return hasher.hexdigest()


def job_file(job: str) -> str:
    """Strip the example part of a job id, leaving the file it belongs to.

    Handles both ``path[1:2]`` example indexes and ``path::name`` node ids.
    """
    stripped = EXAMPLE_INDEX_REGEX.sub("", job)
    return stripped.split(NODE_SEPARATOR, 1)[0]


def humanize_duration(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}:{secs:02d}"
