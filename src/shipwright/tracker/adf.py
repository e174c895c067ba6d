"""Conversion between Atlassian Document Format and plain text/markdown.

Jira Cloud returns descriptions and comments as ADF trees. The engine works
on plain text, and posts comments written in a small markdown subset:
paragraphs, code fences, horizontal rules, **bold**, `code` and
[links](url).
"""

import json
import re
from typing import Any, Dict, List


def _inline_text(node: Dict[str, Any]) -> str:
    node_type = node.get("type")
    if node_type == "text":
        return node.get("text", "")
    if node_type == "hardBreak":
        return "\n"
    if node_type in ("mention", "emoji", "inlineCard"):
        attrs = node.get("attrs") or {}
        return str(attrs.get("text") or attrs.get("shortName") or attrs.get("url") or "")
    return "".join(_inline_text(child) for child in node.get("content") or [])


def _block_text(block: Dict[str, Any]) -> str:
    block_type = block.get("type")
    if block_type == "heading":
        return f"## {_inline_text(block)}"
    if block_type == "bulletList":
        return "\n".join(
            f"- {_inline_text(item)}" for item in block.get("content") or []
        )
    if block_type == "orderedList":
        return "\n".join(
            f"{index}. {_inline_text(item)}"
            for index, item in enumerate(block.get("content") or [], start=1)
        )
    if block_type == "codeBlock":
        return f"```\n{_inline_text(block)}\n```"
    if block_type == "rule":
        return "---"
    return _inline_text(block)


def adf_to_text(value: Any) -> str:
    """Render an ADF document (or a plain string) as plain text.

    Example:
        >>> adf_to_text({"type": "doc", "content": [
        ...     {"type": "paragraph", "content": [{"type": "text", "text": "approve"}]}]})
        'approve'
    """
    if not value:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and "content" in value:
        blocks = [_block_text(block) for block in value.get("content") or []]
        return "\n\n".join(block for block in blocks if block).strip()
    return json.dumps(value)


_INLINE_MARKS = re.compile(r"(\*\*(.+?)\*\*)|(`([^`]+?)`)|(\[([^\]]+?)\]\(([^)]+?)\))")


def _inline_nodes(text: str) -> List[Dict[str, Any]]:
    nodes: List[Dict[str, Any]] = []
    last = 0
    for match in _INLINE_MARKS.finditer(text):
        if match.start() > last:
            nodes.append({"type": "text", "text": text[last:match.start()]})
        if match.group(1):
            nodes.append({"type": "text", "text": match.group(2), "marks": [{"type": "strong"}]})
        elif match.group(3):
            nodes.append({"type": "text", "text": match.group(4), "marks": [{"type": "code"}]})
        else:
            nodes.append({
                "type": "text",
                "text": match.group(6),
                "marks": [{"type": "link", "attrs": {"href": match.group(7)}}],
            })
        last = match.end()
    if last < len(text):
        nodes.append({"type": "text", "text": text[last:]})
    return nodes or [{"type": "text", "text": text}]


def markdown_to_adf(text: str) -> Dict[str, Any]:
    """Convert the markdown subset used in comments to an ADF document."""
    blocks: List[Dict[str, Any]] = []
    lines = text.split("\n")
    i = 0
    while i < len(lines):
        line = lines[i]

        if line.lstrip().startswith("```"):
            code: List[str] = []
            i += 1
            while i < len(lines) and not lines[i].lstrip().startswith("```"):
                code.append(lines[i])
                i += 1
            i += 1
            code_text = "\n".join(code)
            block: Dict[str, Any] = {"type": "codeBlock"}
            if code_text:
                block["content"] = [{"type": "text", "text": code_text}]
            blocks.append(block)
            continue

        if line.strip() == "---":
            blocks.append({"type": "rule"})
            i += 1
            continue

        if not line.strip():
            i += 1
            continue

        paragraph: List[str] = []
        while (
            i < len(lines)
            and lines[i].strip()
            and lines[i].strip() != "---"
            and not lines[i].lstrip().startswith("```")
        ):
            paragraph.append(lines[i])
            i += 1
        blocks.append({"type": "paragraph", "content": _paragraph_nodes(paragraph)})

    if not blocks:
        blocks.append({"type": "paragraph", "content": [{"type": "text", "text": text or " "}]})
    return {"type": "doc", "version": 1, "content": blocks}


def _paragraph_nodes(lines: List[str]) -> List[Dict[str, Any]]:
    nodes: List[Dict[str, Any]] = []
    for index, line in enumerate(lines):
        if index:
            nodes.append({"type": "hardBreak"})
        nodes.extend(_inline_nodes(line))
    return nodes
