"""Label sets: relabelling, name validation and hashing."""

from __future__ import annotations

import hashlib
import re
import struct
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum

_LABEL_NAME = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")
_TEMPLATE = re.compile(r"\$(?:\$|\{([A-Za-z0-9_]+)\}|([A-Za-z0-9_]+))")
_SEPARATOR = b"\xff"

_MASK = (1 << 64) - 1
_P1 = 0x9E3779B185EBCA87
_P2 = 0xC2B2AE3D27D4EB4F
_P3 = 0x165667B19E3779F9
_P4 = 0x85EBCA77C2B2AE63
_P5 = 0x27D4EB2F165667C5


class RelabelAction(str, Enum):
    """What a relabel rule does with a label set."""

    REPLACE = "replace"
    KEEP = "keep"
    DROP = "drop"
    HASHMOD = "hashmod"
    LABELMAP = "labelmap"
    LABELDROP = "labeldrop"
    LABELKEEP = "labelkeep"


@dataclass
class RelabelConfig:
    """One relabelling rule; the regex is anchored at both ends."""

    action: RelabelAction = RelabelAction.REPLACE
    source_labels: list[str] = field(default_factory=list)
    separator: str = ";"
    regex: str = "(.*)"
    target_label: str = ""
    replacement: str = "$1"
    modulus: int = 0
    _pattern: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.action = RelabelAction(self.action)
        try:
            self._pattern = re.compile(f"(?:{self.regex})")
        except re.error as exc:
            raise ValueError(f"invalid regex {self.regex!r}: {exc}") from exc
        if self.action in (RelabelAction.REPLACE, RelabelAction.HASHMOD) and not self.target_label:
            raise ValueError(
                f"relabel configuration for {self.action.value} action requires 'target_label' value"
            )
        if self.action is RelabelAction.HASHMOD and self.modulus == 0:
            raise ValueError("relabel configuration for hashmod requires non-zero modulus")

    def matches(self, text: str) -> re.Match | None:
        return self._pattern.fullmatch(text)


def is_valid_label_name(name: str) -> bool:
    """Whether ``name`` may be used as a label name."""
    return bool(_LABEL_NAME.fullmatch(name))


def _expand(template: str, match: re.Match) -> str:
    def substitute(ref: re.Match) -> str:
        if ref.group(0) == "$$":
            return "$"
        name = ref.group(1) or ref.group(2)
        if name.isdigit():
            index = int(name)
            if index <= match.re.groups:
                return match.group(index) or ""
            return ""
        if name in match.re.groupindex:
            return match.group(name) or ""
        return ""

    return _TEMPLATE.sub(substitute, template)


def _set(labels: dict[str, str], name: str, value: str) -> None:
    if value:
        labels[name] = value
    else:
        labels.pop(name, None)


def _relabel(labels: dict[str, str], cfg: RelabelConfig) -> dict[str, str] | None:
    value = cfg.separator.join(labels.get(name, "") for name in cfg.source_labels)
    result = dict(labels)
    action = cfg.action

    if action is RelabelAction.DROP:
        return None if cfg.matches(value) else result
    if action is RelabelAction.KEEP:
        return result if cfg.matches(value) else None
    if action is RelabelAction.REPLACE:
        match = cfg.matches(value)
        if match is None:
            return result
        target = _expand(cfg.target_label, match)
        if not is_valid_label_name(target):
            return result
        _set(result, target, _expand(cfg.replacement, match))
    elif action is RelabelAction.HASHMOD:
        digest = hashlib.md5(value.encode()).digest()
        _set(result, cfg.target_label, str(int.from_bytes(digest[8:], "big") % cfg.modulus))
    elif action is RelabelAction.LABELMAP:
        for name, label_value in labels.items():
            match = cfg.matches(name)
            if match is not None:
                _set(result, _expand(cfg.replacement, match), label_value)
    elif action is RelabelAction.LABELDROP:
        result = {k: v for k, v in labels.items() if not cfg.matches(k)}
    elif action is RelabelAction.LABELKEEP:
        result = {k: v for k, v in labels.items() if cfg.matches(k)}
    return result


def process(
    labels: Mapping[str, str], configs: Iterable[RelabelConfig]
) -> dict[str, str] | None:
    """Apply ``configs`` in order; return the sorted result or None if dropped."""
    current: dict[str, str] | None = dict(labels)
    for cfg in configs:
        current = _relabel(current, cfg)
        if current is None:
            return None
    return dict(sorted(current.items()))


def _rotl(value: int, bits: int) -> int:
    return ((value << bits) | (value >> (64 - bits))) & _MASK


def _round(acc: int, lane: int) -> int:
    acc = (acc + lane * _P2) & _MASK
    return (_rotl(acc, 31) * _P1) & _MASK


def _merge(acc: int, value: int) -> int:
    acc ^= _round(0, value)
    return (acc * _P1 + _P4) & _MASK


def _xxh64(data: bytes) -> int:
    length = len(data)
    stripes_end = length - length % 32
    if length >= 32:
        v1, v2, v3, v4 = (_P1 + _P2) & _MASK, _P2, 0, (-_P1) & _MASK
        for a, b, c, d in struct.iter_unpack("<4Q", data[:stripes_end]):
            v1, v2, v3, v4 = _round(v1, a), _round(v2, b), _round(v3, c), _round(v4, d)
        h = (_rotl(v1, 1) + _rotl(v2, 7) + _rotl(v3, 12) + _rotl(v4, 18)) & _MASK
        for v in (v1, v2, v3, v4):
            h = _merge(h, v)
    else:
        h = _P5
    h = (h + length) & _MASK

    rest = data[stripes_end:]
    words_end = len(rest) - len(rest) % 8
    for (lane,) in struct.iter_unpack("<Q", rest[:words_end]):
        h ^= _round(0, lane)
        h = (_rotl(h, 27) * _P1 + _P4) & _MASK
    rest = rest[words_end:]
    if len(rest) >= 4:
        (word,) = struct.unpack("<I", rest[:4])
        h ^= (word * _P1) & _MASK
        h = (_rotl(h, 23) * _P2 + _P3) & _MASK
        rest = rest[4:]
    for byte in rest:
        h ^= (byte * _P5) & _MASK
        h = (_rotl(h, 11) * _P1) & _MASK

    h ^= h >> 33
    h = (h * _P2) & _MASK
    h ^= h >> 29
    h = (h * _P3) & _MASK
    h ^= h >> 32
    return h


def labels_hash(labels: Mapping[str, str]) -> int:
    """A 64-bit hash of the label set, independent of label order."""
    payload = b"".join(
        name.encode() + _SEPARATOR + value.encode() + _SEPARATOR
        for name, value in sorted(labels.items())
    )
    return _xxh64(payload)