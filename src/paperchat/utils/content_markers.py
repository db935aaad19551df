"""
Helpers for the bracketed markers the chat manager wraps user content in.

A composed user message looks like::

    [Document: Some Paper]:
    ...

    [PDF Content]:
    ...

    [Selected text from PDF]:
    "..."

    [Question]:
    What does section 2 claim?
"""
import re
from typing import Optional

DOCUMENT_MARKER = "[Document: {title}]:\n{text}"
PDF_CONTENT_MARKER = "[PDF Content]:\n{text}"
SELECTED_TEXT_MARKER = '[Selected text]:\n"{text}"'
SELECTED_PDF_TEXT_MARKER = '[Selected text from PDF]:\n"{text}"'
QUESTION_MARKER = "[Question]:\n{text}"

_QUESTION_RE = re.compile(r"\[Question\]:\s*(.+)", re.DOTALL)
_DOCUMENT_BLOCK_RE = re.compile(r"\[Document: [^\]]*\]:[\s\S]*?(?=\[(?:PDF Content|Selected[^\]]*|Question)\]:|$)")
_PDF_BLOCK_RE = re.compile(r"\[PDF Content\]:[\s\S]*?(?=\[(?:Selected[^\]]*|Question)\]:|$)")
_SELECTED_LABEL_RE = re.compile(r"\[Selected[^\]]*\]:\s*")
_LEADING_LABEL_RE = re.compile(r"^\[[^\]]*\]:\s*")


def extract_question(content: Optional[str]) -> str:
    """Return the user's own question with document, PDF and selection blocks removed."""
    if not content:
        return ""
    match = _QUESTION_RE.search(content)
    if match:
        question = match.group(1).strip()
    else:
        question = _DOCUMENT_BLOCK_RE.sub("", content)
        question = _PDF_BLOCK_RE.sub("", question)
        question = _SELECTED_LABEL_RE.sub("", question).strip()
    return _LEADING_LABEL_RE.sub("", question).strip()


def truncate(text: str, limit: int, suffix: str = "...") -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + suffix
