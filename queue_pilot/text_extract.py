from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

import orjson

MAX_DEPTH = 64
_JSON_LEADERS = ("{", "[", '"')


@dataclass(frozen=True, slots=True)
class PlainText:
    text: str


@dataclass(frozen=True, slots=True)
class StringNode:
    value: str


@dataclass(frozen=True, slots=True)
class ListNode:
    items: tuple["Node", ...]


@dataclass(frozen=True, slots=True)
class Compound:
    text: "Node | None" = None
    translate: "Node | None" = None
    extra: tuple["Node", ...] = ()
    with_: tuple["Node", ...] = ()


Node = Union[PlainText, StringNode, ListNode, Compound]

_EMPTY = PlainText("")


def _decode_json_text(value: str) -> tuple[bool, Any]:
    # Scalars ("12", "true") decode to the same text, so only containers and
    # quoted strings are worth a decode attempt.
    stripped = value.strip()
    if not stripped.startswith(_JSON_LEADERS):
        return False, None
    try:
        return True, orjson.loads(stripped)
    except orjson.JSONDecodeError:
        return False, None


def _children(value: Any, depth: int) -> tuple[Node, ...]:
    if isinstance(value, list):
        return tuple(to_node(item, depth + 1) for item in value)
    return (to_node(value, depth + 1),)


def _tagged_list(inner: Any, depth: int) -> Node:
    if isinstance(inner, list):
        return ListNode(tuple(to_node(item, depth + 1) for item in inner))
    if isinstance(inner, dict) and isinstance(inner.get("value"), list):
        return ListNode(tuple(to_node(item, depth + 1) for item in inner["value"]))
    return to_node(inner, depth + 1)


def _from_mapping(value: dict[str, Any], depth: int) -> Node:
    tag = value.get("type", value.get("kind"))
    inner = value.get("value")
    if tag == "compound" and inner:
        return to_node(inner, depth + 1)
    if tag == "string" and isinstance(inner, str):
        return StringNode(inner)
    if tag == "list" and inner:
        return _tagged_list(inner, depth)
    text = to_node(value["text"], depth + 1) if "text" in value else None
    translate = None
    if text is None and value.get("translate"):
        translate = to_node(value["translate"], depth + 1)
    extra = _children(value["extra"], depth) if value.get("extra") else ()
    with_ = _children(value["with"], depth) if value.get("with") else ()
    return Compound(text=text, translate=translate, extra=extra, with_=with_)


def to_node(value: Any, depth: int = 0) -> Node:
    if depth > MAX_DEPTH or value is None:
        return _EMPTY
    if isinstance(value, str):
        decoded, parsed = _decode_json_text(value)
        if not decoded:
            return PlainText(value)
        if isinstance(parsed, str) and parsed == value:
            return PlainText(value)
        return to_node(parsed, depth + 1)
    if isinstance(value, bool):
        return PlainText("true" if value else "false")
    if isinstance(value, (int, float)):
        return PlainText(str(value))
    if isinstance(value, (list, tuple)):
        return ListNode(tuple(to_node(item, depth + 1) for item in value))
    if isinstance(value, dict):
        return _from_mapping(value, depth)
    if isinstance(value, (bytes, bytearray)):
        return to_node(bytes(value).decode("utf-8", errors="replace"), depth + 1)
    return PlainText(str(value))


def flatten(node: Node) -> str:
    if isinstance(node, PlainText):
        return node.text
    if isinstance(node, StringNode):
        return node.value
    if isinstance(node, ListNode):
        return "".join(flatten(item) for item in node.items)
    if isinstance(node, Compound):
        parts: list[str] = []
        if node.text is not None:
            parts.append(flatten(node.text))
        elif node.translate is not None:
            parts.append(flatten(node.translate))
        parts.extend(flatten(child) for child in node.extra)
        parts.extend(flatten(child) for child in node.with_)
        return "".join(parts)
    return ""


def extract_text(value: Any) -> str:
    return flatten(to_node(value))
