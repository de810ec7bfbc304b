"""
Storage module for Local Ollama Chat
Exports a rendered chat history to markdown, HTML, JSON or DOCX
"""
import json
import re
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import pypandoc
from markdown import markdown as md_to_html

from errors import ValidationError
from models import ChatMessage

EXPORT_FORMATS = ("md", "html", "json", "docx")

ROLE_TITLES = {"user": "User", "assistant": "Assistant", "system": "System"}


def slugify(text: str, maxlen: int = 40) -> str:
    """Convert text to filesystem-safe slug"""
    text = re.sub(r"\s+", "-", text.strip())
    text = re.sub(r"[^a-zA-Z0-9-_]", "", text)
    return text[:maxlen] or "chat"


def escape_html(s: str) -> str:
    """Escape HTML special characters"""
    return s.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def messages_to_markdown(messages: List[ChatMessage], user_name: Optional[str] = None) -> str:
    """Build a markdown transcript of the rendered messages"""
    title = f"Conversation with {user_name}" if user_name else "Conversation"
    md_parts = [f"# {title}\n\n"]
    md_parts.append(f"Exported: {datetime.now().isoformat(timespec='seconds')}\n\n")
    md_parts.append(f"Messages: {len(messages)}\n\n---\n\n")

    for msg in messages:
        heading = ROLE_TITLES.get(msg.role, msg.role.title())
        if msg.role == "assistant" and msg.model:
            heading += f" ({msg.model})"
        md_parts.append(f"## {heading}\n\n")
        if msg.image_url:
            md_parts.append("*[image attached]*\n\n")
        if msg.content:
            md_parts.append(f"{msg.content}\n\n")
        md_parts.append(f"*{msg.timestamp}*\n\n---\n\n")

    return "".join(md_parts)


def messages_to_html(messages: List[ChatMessage], user_name: Optional[str] = None) -> str:
    body = md_to_html(messages_to_markdown(messages, user_name), extensions=["fenced_code"])
    title = escape_html(f"Conversation with {user_name}" if user_name else "Conversation")
    return f"""<!doctype html>
<html lang="en">
<head>
<meta charset="utf-8"/>
<title>{title}</title>
</head>
<body>
{body}
</body>
</html>
"""


def messages_to_json(messages: List[ChatMessage], user_name: Optional[str] = None) -> str:
    doc = {
        "user": user_name,
        "exported_at": datetime.now().isoformat(timespec="seconds"),
        "messages": [m.to_dict() for m in messages],
    }
    return json.dumps(doc, indent=2, ensure_ascii=False)


def export_messages(messages: List[ChatMessage], fmt: str, user_name: Optional[str] = None) -> str:
    """Serialize messages to a text format (md, html or json)"""
    fmt = fmt.lower()
    if fmt == "md":
        return messages_to_markdown(messages, user_name)
    if fmt == "html":
        return messages_to_html(messages, user_name)
    if fmt == "json":
        return messages_to_json(messages, user_name)
    if fmt == "docx":
        raise ValidationError("docx is a binary format; use write_export")
    raise ValidationError("unsupported format; use md, html, json, or docx")


def write_export(messages: List[ChatMessage], fmt: str, out_dir: Path,
                 user_name: Optional[str] = None) -> Path:
    """Write an export file into out_dir and return its path"""
    fmt = fmt.lower()
    if fmt not in EXPORT_FORMATS:
        raise ValidationError("unsupported format; use md, html, json, or docx")

    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    out_file = out_dir / f"chat_{slugify(user_name or '')}_{stamp}.{fmt}"

    if fmt == "docx":
        try:
            pypandoc.convert_text(
                messages_to_markdown(messages, user_name), "docx",
                format="md", outputfile=str(out_file)
            )
        except (OSError, RuntimeError) as e:
            raise RuntimeError(f"pandoc conversion failed: {e}") from e
        return out_file

    out_file.write_text(export_messages(messages, fmt, user_name), encoding="utf-8")
    return out_file
