"""Source channels: file-pair discovery from glob patterns.

Patterns follow the usual sequencing convention where `*` captures the
sample key and a brace group enumerates the members of each group:

    /data/fastq/*_R{1,2}.fastq.gz  ->  ("s1", (s1_R1.fastq.gz, s1_R2.fastq.gz)), ...
"""

from __future__ import annotations

import glob
import re
from pathlib import Path

from seqflow.contracts import ChannelItem, InputNotFoundError
from seqflow.core.logging import get_logger

logger = get_logger(__name__)

_BRACE_PATTERN = re.compile(r"\{([^{}]*)\}")


def expand_braces(pattern: str) -> list[str]:
    """Expand the first-level brace groups of a glob pattern.

    Example:
        expand_braces("x_R{1,2}.fq") == ["x_R1.fq", "x_R2.fq"]
    """
    match = _BRACE_PATTERN.search(pattern)
    if match is None:
        return [pattern]
    head, tail = pattern[: match.start()], pattern[match.end() :]
    expanded: list[str] = []
    for option in match.group(1).split(","):
        expanded.extend(expand_braces(f"{head}{option}{tail}"))
    return expanded


def _key_regex(name_pattern: str) -> re.Pattern[str]:
    """Regex over a file name where the first `*` captures the key."""
    parts: list[str] = []
    captured = False
    for char in name_pattern:
        if char == "*":
            parts.append(".*?" if captured else "(?P<key>.+?)")
            captured = True
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("^" + "".join(parts) + "$")


def find_file_groups(
    channel: str,
    pattern: str,
    size: int = 2,
) -> list[ChannelItem]:
    """Group files matching `pattern` by key.

    Each returned item carries the key captured by the first `*` in the
    file-name part of the pattern and a tuple of paths ordered by brace
    alternative. Groups with fewer than `size` members are dropped with a
    warning; `size=-1` accepts groups of any size.

    Raises:
        InputNotFoundError: If no complete group is found
    """
    groups: dict[str, dict[int, list[Path]]] = {}
    for index, alternative in enumerate(expand_braces(pattern)):
        regex = _key_regex(Path(alternative).name)
        for match_path in sorted(glob.glob(alternative)):
            path = Path(match_path)
            match = regex.match(path.name)
            key = match.group("key") if match and "key" in regex.groupindex else path.stem
            groups.setdefault(key, {}).setdefault(index, []).append(path.resolve())

    items: list[ChannelItem] = []
    for key in sorted(groups):
        members = [p for index in sorted(groups[key]) for p in groups[key][index]]
        if size != -1 and len(members) != size:
            logger.warning(
                "incomplete_file_group",
                channel=channel,
                key=key,
                expected=size,
                found=len(members),
            )
            continue
        items.append(ChannelItem(key=key, value=tuple(members), tag=channel))

    if not items:
        raise InputNotFoundError(channel, pattern)
    logger.info("file_groups_found", channel=channel, pattern=pattern, groups=len(items))
    return items
