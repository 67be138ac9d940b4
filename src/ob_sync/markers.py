"""Commit message format of the commits ob creates on its own.

The squash marker embeds the number of original commits it replaces. That
number is the only record of squash history, so this module is the single
place where the message layout is written and read back.
"""

import re

AUTO_COMMIT_MESSAGE = "Auto commit by ob"
"""str: Message of the commit wrapping pending working copy changes."""

# Accepts a bare subject or a `git log --oneline` line (abbreviated hash prefix).
_SQUASH_RE = re.compile(r"^(?:[0-9a-f]{4,40}\s+)?Squashed (\d+) commits by ob$")


def encode_squash(count: int) -> str:
    """Formats the squash marker for a commit representing `count` commits.

    Raises:
        ValueError: If `count` is not positive.
    """
    if count < 1:
        raise ValueError(f"Squash count must be positive, got {count}")
    return f"Squashed {count} commits by ob"


def decode_squash(line: str) -> int | None:
    """Extracts the embedded count from a squash marker.

    Args:
        line (str): A commit subject or a `git log --oneline` line.

    Returns:
        int | None: The embedded count, or None if the line is not a squash marker.
    """
    match = _SQUASH_RE.match(line.strip())
    if not match:
        return None
    return int(match.group(1))


def represented_commits(lines: list[str]) -> int:
    """Sums how many original commits a list of log lines stands for.

    Squash markers contribute their embedded count; any other commit counts as one.
    """
    total = 0
    for line in lines:
        count = decode_squash(line)
        total += count if count is not None else 1
    return total
