"""Prefix/suffix edit scripts between two hypothesis strings.

Recognition hypotheses are almost always prefix-stable with a short
changing tail, so trimming the common prefix and suffix and replacing
the middle gives a small delete-then-insert script without a full diff.
"""

from dataclasses import dataclass, field
from enum import Enum


class EditKind(Enum):
    DELETE = "delete"
    INSERT = "insert"


@dataclass
class EditOp:
    """A pending edit at ``position`` in the displayed text.

    For DELETE, ``count`` characters starting at ``position`` are removed.
    For INSERT, ``text`` is inserted at ``position``.
    """

    kind: EditKind
    position: int
    count: int
    text: str = ""


@dataclass
class EditScript:
    """Delete-then-insert script between two strings."""

    prefix_length: int
    suffix_length: int
    ops: list[EditOp] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not self.ops

    @property
    def delete_count(self) -> int:
        return sum(op.count for op in self.ops if op.kind == EditKind.DELETE)

    @property
    def insert_text(self) -> str:
        return "".join(op.text for op in self.ops if op.kind == EditKind.INSERT)


def common_prefix_length(old_text: str, new_text: str) -> int:
    limit = min(len(old_text), len(new_text))
    i = 0
    while i < limit and old_text[i] == new_text[i]:
        i += 1
    return i


def common_suffix_length(old_text: str, new_text: str, prefix_length: int) -> int:
    """Common suffix length that never overlaps the common prefix."""
    limit = min(len(old_text), len(new_text)) - prefix_length
    i = 0
    while i < limit and old_text[len(old_text) - 1 - i] == new_text[len(new_text) - 1 - i]:
        i += 1
    return i


def compute_edit_script(old_text: str, new_text: str) -> EditScript:
    """Compute the edit turning old_text into new_text.

    Returns:
        EditScript with at most one DELETE followed by at most one INSERT,
        both at the end of the common prefix

    """
    prefix = common_prefix_length(old_text, new_text)
    suffix = common_suffix_length(old_text, new_text, prefix)

    delete_count = len(old_text) - suffix - prefix
    insert_text = new_text[prefix:len(new_text) - suffix]

    ops: list[EditOp] = []
    if delete_count > 0:
        ops.append(EditOp(kind=EditKind.DELETE, position=prefix, count=delete_count))
    if insert_text:
        ops.append(EditOp(kind=EditKind.INSERT, position=prefix, count=len(insert_text), text=insert_text))

    return EditScript(prefix_length=prefix, suffix_length=suffix, ops=ops)


def apply_edit_script(old_text: str, script: EditScript) -> str:
    """Apply a whole script at once; the animated path lives in Typewriter."""
    text = old_text
    for op in script.ops:
        if op.kind == EditKind.DELETE:
            text = text[:op.position] + text[op.position + op.count:]
        else:
            text = text[:op.position] + op.text + text[op.position:]
    return text
