"""yq-style patch expressions applied to YAML documents.

The supported language is a small subset of yq, enough for scripted edits::

    .cpus = 2
    .memory = "8GiB" | .env.DEBUG = "1"
    .mounts += [{location: /srv/data, writable: true}]
    .port_forwards[0].host_port = 8080
    del(.provision)
    ."key.with.dots" = true

Stages are separated by ``|`` and applied left to right. Values on the right
of ``=``/``+=`` are YAML flow nodes. Documents are loaded and dumped with
``ruamel.yaml`` in round-trip mode so comments and key order survive.
"""
from __future__ import annotations

import io
import logging
import re
from collections.abc import MutableMapping, MutableSequence
from dataclasses import dataclass

from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap, CommentedSeq
from ruamel.yaml.error import YAMLError

LOGGER = logging.getLogger(__name__)

_IDENT = re.compile(r"[A-Za-z0-9_-]+")

PathSegment = str | int


class PatchError(ValueError):
    """Raised when an expression is malformed or cannot be applied."""


@dataclass(frozen=True)
class PatchStage:
    """One ``path op value`` step of a pipeline."""

    path: tuple[PathSegment, ...]
    operator: str
    value_text: str = ""


def _yaml() -> YAML:
    yaml = YAML()
    yaml.preserve_quotes = True
    yaml.width = 4096
    return yaml


def split_pipeline(expression: str) -> list[str]:
    """Split *expression* on top-level ``|`` characters."""
    stages: list[str] = []
    current: list[str] = []
    depth = 0
    quote: str | None = None
    for char in expression:
        if quote is not None:
            current.append(char)
            if char == quote:
                quote = None
            continue
        if char in "\"'":
            quote = char
        elif char in "[{(":
            depth += 1
        elif char in "]})":
            depth -= 1
        elif char == "|" and depth == 0:
            stages.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    if quote is not None:
        raise PatchError(f"unterminated string in expression: {expression!r}")
    if depth != 0:
        raise PatchError(f"unbalanced brackets in expression: {expression!r}")
    stages.append("".join(current).strip())
    if any(not stage for stage in stages):
        raise PatchError(f"empty stage in expression: {expression!r}")
    return stages


def parse_path(text: str) -> tuple[tuple[PathSegment, ...], int]:
    """Parse a path at the start of *text*; return it and the characters used."""
    if not text.startswith("."):
        raise PatchError(f"path must start with '.': {text!r}")
    segments: list[PathSegment] = []
    pos = 0
    while pos < len(text):
        char = text[pos]
        if char == ".":
            pos += 1
            if pos < len(text) and text[pos] == '"':
                end = text.find('"', pos + 1)
                if end == -1:
                    raise PatchError(f"unterminated key in path: {text!r}")
                segments.append(text[pos + 1 : end])
                pos = end + 1
                continue
            match = _IDENT.match(text, pos)
            if match is not None:
                segments.append(match.group(0))
                pos = match.end()
            elif pos < len(text) and text[pos] not in "[ \t=+":
                raise PatchError(f"invalid path segment in {text!r}")
        elif char == "[":
            end = text.find("]", pos)
            if end == -1:
                raise PatchError(f"unterminated index in path: {text!r}")
            try:
                segments.append(int(text[pos + 1 : end]))
            except ValueError as exc:
                raise PatchError(f"invalid index in path: {text!r}") from exc
            pos = end + 1
        else:
            break
    return tuple(segments), pos


def parse_stage(text: str) -> PatchStage:
    """Parse a single pipeline stage."""
    if text.startswith("del(") and text.endswith(")"):
        inner = text[4:-1].strip()
        path, used = parse_path(inner)
        if inner[used:].strip():
            raise PatchError(f"unexpected text in del(): {text!r}")
        if not path:
            raise PatchError("cannot delete the document root")
        return PatchStage(path=path, operator="del")

    path, used = parse_path(text)
    rest = text[used:].lstrip()
    for operator in ("+=", "="):
        if rest.startswith(operator):
            value_text = rest[len(operator) :].strip()
            if not value_text:
                raise PatchError(f"missing value after {operator!r}: {text!r}")
            return PatchStage(path=path, operator=operator, value_text=value_text)
    raise PatchError(f"unsupported expression {text!r}: expected '=', '+=' or del()")


def parse_expression(expression: str) -> list[PatchStage]:
    """Parse *expression* into its pipeline stages."""
    if not expression.strip():
        raise PatchError("expression must not be empty")
    return [parse_stage(stage) for stage in split_pipeline(expression.strip())]


class PatchEvaluator:
    """Apply patch expressions to raw YAML bytes."""

    def evaluate(self, expression: str, data: bytes) -> bytes:
        """Return *data* transformed by *expression*."""
        stages = parse_expression(expression)
        yaml = _yaml()
        try:
            document = yaml.load(data.decode("utf-8"))
        except (YAMLError, UnicodeDecodeError) as exc:
            raise PatchError(f"failed to parse document: {exc}") from exc
        if document is None:
            document = CommentedMap()

        for stage in stages:
            LOGGER.debug("Applying patch stage %s %s", _format_path(stage.path), stage.operator)
            document = self._apply(document, stage, yaml)

        buffer = io.StringIO()
        yaml.dump(document, buffer)
        return buffer.getvalue().encode("utf-8")

    def _apply(self, document: object, stage: PatchStage, yaml: YAML) -> object:
        if stage.operator == "del":
            _delete(document, stage.path)
            return document
        try:
            value = yaml.load(stage.value_text)
        except YAMLError as exc:
            raise PatchError(f"invalid value {stage.value_text!r}: {exc}") from exc
        if stage.operator == "+=":
            current = _get(document, stage.path)
            value = _add(current, value, stage.path)
        if not stage.path:
            return value
        _set(document, stage.path, value)
        return document


def _format_path(path: tuple[PathSegment, ...]) -> str:
    if not path:
        return "."
    return "".join(f"[{seg}]" if isinstance(seg, int) else f".{seg}" for seg in path)


def _get(node: object, path: tuple[PathSegment, ...]) -> object:
    for segment in path:
        if isinstance(segment, int) and isinstance(node, MutableSequence):
            if -len(node) <= segment < len(node):
                node = node[segment]
                continue
            return None
        if isinstance(segment, str) and isinstance(node, MutableMapping):
            if segment not in node:
                return None
            node = node[segment]
            continue
        return None
    return node


def _set(document: object, path: tuple[PathSegment, ...], value: object) -> None:
    node = document
    for position, segment in enumerate(path):
        last = position == len(path) - 1
        following = None if last else path[position + 1]
        if isinstance(segment, str):
            if not isinstance(node, MutableMapping):
                parent = _format_path(path[:position])
                raise PatchError(f"cannot index {parent} with key {segment!r}")
            if last:
                node[segment] = value
                return
            if node.get(segment) is None:
                node[segment] = CommentedSeq() if isinstance(following, int) else CommentedMap()
            node = node[segment]
        else:
            if not isinstance(node, MutableSequence):
                raise PatchError(f"cannot index {_format_path(path[:position])} with [{segment}]")
            if segment == len(node):
                node.append(None)
            elif not -len(node) <= segment < len(node):
                raise PatchError(f"index {segment} out of range at {_format_path(path[:position])}")
            if last:
                node[segment] = value
                return
            if node[segment] is None:
                node[segment] = CommentedSeq() if isinstance(following, int) else CommentedMap()
            node = node[segment]


def _delete(document: object, path: tuple[PathSegment, ...]) -> None:
    parent = _get(document, path[:-1])
    key = path[-1]
    if isinstance(key, str) and isinstance(parent, MutableMapping):
        parent.pop(key, None)
    elif isinstance(key, int) and isinstance(parent, MutableSequence):
        if -len(parent) <= key < len(parent):
            del parent[key]


def _add(current: object, value: object, path: tuple[PathSegment, ...]) -> object:
    if current is None:
        return value
    if isinstance(current, MutableSequence):
        if isinstance(value, MutableSequence):
            current.extend(value)
        else:
            current.append(value)
        return current
    if isinstance(current, bool) or isinstance(value, bool):
        raise PatchError(f"cannot add to boolean at {_format_path(path)}")
    if isinstance(current, (int, float)) and isinstance(value, (int, float)):
        return current + value
    if isinstance(current, str) and isinstance(value, str):
        return current + value
    raise PatchError(
        f"cannot add {type(value).__name__} to {type(current).__name__} at {_format_path(path)}"
    )


__all__ = ["PatchError", "PatchEvaluator", "PatchStage", "parse_expression"]
