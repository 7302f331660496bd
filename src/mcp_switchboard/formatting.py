"""
Rendering helpers for gateway responses.

Turns JSON Schemas into parameter documentation, shortens descriptions on a
word boundary and normalizes upstream content blocks.
"""

from __future__ import annotations

import json
from typing import Any

ELLIPSIS = "..."


def format_schema(schema: Any, indent: str = "  ") -> str:
    """Format a JSON Schema as human-readable parameter documentation."""
    if not isinstance(schema, dict):
        return f"{indent}(no schema)"

    properties = schema.get("properties")
    if schema.get("type") == "object" and isinstance(properties, dict):
        if not properties:
            return f"{indent}(no parameters)"

        required = schema.get("required")
        required = required if isinstance(required, list) else []
        return "\n".join(
            format_property(name, prop, name in required, indent)
            for name, prop in properties.items()
        )

    if schema.get("type"):
        return f"{indent}({_type_label(schema)})"
    return f"{indent}(complex schema)"


def _type_label(schema: dict[str, Any]) -> str:
    if isinstance(schema.get("enum"), list):
        return "enum: " + ", ".join(json.dumps(v) for v in schema["enum"])

    kind = schema.get("type")
    if isinstance(kind, list):
        return " | ".join(str(k) for k in kind)
    if kind == "array" and isinstance(schema.get("items"), dict) and schema["items"].get("type"):
        return f"array of {_type_label(schema['items'])}"
    if kind:
        return str(kind)
    if schema.get("anyOf") or schema.get("oneOf"):
        return "union"
    return ""


def format_property(name: str, schema: Any, required: bool, indent: str) -> str:
    """Format a single property, recursing into nested objects."""
    if not isinstance(schema, dict):
        return f"{indent}{name}{' *required*' if required else ''}"

    parts = [f"{indent}{name}"]
    type_label = _type_label(schema)
    if type_label:
        parts.append(f"({type_label})")
    if required:
        parts.append("*required*")
    if isinstance(schema.get("description"), str) and schema["description"]:
        parts.append(f"- {schema['description']}")
    if "default" in schema:
        parts.append(f"[default: {json.dumps(schema['default'])}]")

    line = " ".join(parts)

    nested = schema
    if schema.get("type") == "array" and isinstance(schema.get("items"), dict):
        nested = schema["items"]
    if nested.get("type") == "object" and isinstance(nested.get("properties"), dict):
        if nested["properties"]:
            line += "\n" + format_schema(nested, indent + "  ")
    return line


def truncate_at_word(text: str, target: int = 50) -> str:
    """Shorten text to at most ``target`` characters, preferring a word break.

    Already-short text (including previously truncated text) is returned
    unchanged.
    """
    if not text or len(text) <= target:
        return text

    budget = max(target - len(ELLIPSIS), 1)
    head = text[:budget]
    last_space = head.rfind(" ")
    if last_space > budget * 0.6:
        head = head[:last_space]
    return head.rstrip() + ELLIPSIS


def binary_placeholder(mime_type: str | None, label: str = "Binary data") -> str:
    return f"[{label}: {mime_type or 'unknown'}]"


def convert_tool_content(blocks: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Normalize tools/call content into text and image blocks."""
    converted: list[dict[str, Any]] = []
    for block in blocks:
        kind = block.get("type")
        if kind == "text":
            converted.append({"type": "text", "text": str(block.get("text", ""))})
        elif kind == "image":
            converted.append(
                {
                    "type": "image",
                    "data": block.get("data", ""),
                    "mimeType": block.get("mimeType", "image/png"),
                }
            )
        elif kind == "audio":
            converted.append({"type": "text", "text": binary_placeholder(block.get("mimeType"), "Audio")})
        elif kind == "resource":
            resource = block.get("resource") or {}
            converted.append({"type": "text", "text": _resource_text(resource)})
        elif kind == "resource_link":
            converted.append({"type": "text", "text": f"[Resource: {block.get('uri', '')}]"})
        else:
            converted.append({"type": "text", "text": json.dumps(block)})
    return converted


def convert_resource_contents(contents: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Normalize resources/read contents into text blocks."""
    return [{"type": "text", "text": _resource_text(item)} for item in contents]


def _resource_text(item: dict[str, Any]) -> str:
    if "text" in item:
        return str(item["text"])
    if "blob" in item:
        return binary_placeholder(item.get("mimeType"))
    return json.dumps(item)


def joined_text(blocks: list[dict[str, Any]]) -> str:
    """Concatenate the text blocks of a content list."""
    return "\n".join(block["text"] for block in blocks if block.get("type") == "text")
