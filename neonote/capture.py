"""Quick-capture parsing.

A capture is a blob of text whose first line holds the title and any
``#hashtags``; the remaining lines become the body. The tags ``#todo``,
``#event`` and ``#note`` also pick the kind of the item.
"""

from __future__ import annotations

from dataclasses import dataclass

from neonote.data.models import NoteKind

_KIND_TAGS = {
    "todo": NoteKind.TASK,
    "event": NoteKind.EVENT,
    "note": NoteKind.NOTE,
}


@dataclass(frozen=True)
class Capture:
    title: str
    body: str
    kind: NoteKind
    tags: tuple[str, ...]


def parse_capture(text: str) -> Capture:
    lines = text.splitlines()
    first_line = lines[0] if lines else ""
    body = "\n".join(lines[1:])

    kind = NoteKind.NOTE
    tags: list[str] = []
    title_words: list[str] = []
    for word in first_line.split():
        if word.startswith("#"):
            tag = word[1:]
            if not tag:
                continue
            kind = _KIND_TAGS.get(tag.lower(), kind)
            tags.append(tag)
        else:
            title_words.append(word)

    return Capture(
        title=" ".join(title_words),
        body=body,
        kind=kind,
        tags=tuple(tags),
    )
