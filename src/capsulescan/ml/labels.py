"""Label vocabulary parsing.

Label files are newline separated. Each line is either a bare label
(``amber capsule``) or carries a numeric index prefix (``3 amber capsule``).
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from typing import overload

from capsulescan.ml.errors import LabelsUnavailableError


def parse_label_line(line: str) -> str:
    """Return the label on a single, already trimmed, line."""
    parts = line.split(" ")
    if len(parts) > 1 and parts[0].isdigit():
        remainder = " ".join(parts[1:]).strip()
        if remainder:
            return remainder
    return line


def parse_labels(text: str) -> tuple[str, ...]:
    """Parse label file contents into an ordered tuple of labels."""
    labels = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        labels.append(parse_label_line(line))
    return tuple(labels)


@dataclass(frozen=True)
class LabelSet(Sequence[str]):
    """Ordered, immutable label vocabulary; index is the class id."""

    labels: tuple[str, ...] = ()

    @classmethod
    def from_text(cls, text: str | None) -> LabelSet:
        """Build a label set from label file contents.

        Raises:
            LabelsUnavailableError: If there is no text or it holds no labels.
        """
        if text is None:
            raise LabelsUnavailableError("Label source is absent")
        labels = parse_labels(text)
        if not labels:
            raise LabelsUnavailableError("Label source contains no labels")
        return cls(labels=labels)

    @overload
    def __getitem__(self, index: int) -> str: ...

    @overload
    def __getitem__(self, index: slice) -> tuple[str, ...]: ...

    def __getitem__(self, index: int | slice) -> str | tuple[str, ...]:
        return self.labels[index]

    def __len__(self) -> int:
        return len(self.labels)

    def __iter__(self) -> Iterator[str]:
        return iter(self.labels)
