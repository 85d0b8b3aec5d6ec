"""Markdown to Notion block conversion.

Supports a practical subset: headings (#-###), bulleted and numbered items,
to-dos, quotes, dividers, fenced code and paragraphs. Inline formatting
(**bold**, *italic*, ~~strike~~, `code`, [text](url)) is parsed with parsy.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

import parsy as P

logger = logging.getLogger("notion-lite")

# Notion caps a rich_text content string at 2000 characters
MAX_RICH_TEXT_CHARS = 1800


# =============================================================================
# Inline formatting
# =============================================================================

@dataclass
class RichTextSpan:
    """A span of rich text with formatting."""
    text: str
    bold: bool = False
    italic: bool = False
    strikethrough: bool = False
    code: bool = False
    link: Optional[str] = None


def _apply_formatting(spans: list[RichTextSpan], **kwargs) -> list[RichTextSpan]:
    for span in spans:
        for key, value in kwargs.items():
            setattr(span, key, value)
    return spans


def _merge_adjacent_spans(spans: list[RichTextSpan]) -> list[RichTextSpan]:
    """Merge adjacent spans with identical formatting."""
    merged: list[RichTextSpan] = []
    for span in spans:
        if not span.text:
            continue
        if (merged and
            merged[-1].bold == span.bold and
            merged[-1].italic == span.italic and
            merged[-1].strikethrough == span.strikethrough and
            merged[-1].code == span.code and
            merged[-1].link == span.link):
            merged[-1].text += span.text
        else:
            merged.append(span)
    return merged


# Characters that start special syntax (used for literal text boundaries)
_SPECIAL_CHARS = set('\\*~`[')


def _make_inline_parser():
    """Build the inline formatting parser using parsy combinators.

    Delimited content is captured with a regex that stops at the closing
    delimiter, then parsed recursively.
    """

    def parse_inner(text: str) -> list[RichTextSpan]:
        try:
            return inline.parse(text)
        except P.ParseError:
            return [RichTextSpan(text=text)]

    escaped = (P.string('\\') >> P.char_from('\\*~`[]()#>-_')).map(
        lambda c: RichTextSpan(text=c)
    )

    code = (
        P.string('`') >> P.regex(r'[^`]+') << P.string('`')
    ).map(lambda t: RichTextSpan(text=t, code=True))

    bold = (
        P.string('**') >> P.regex(r'(?:[^*]|\*(?!\*))+') << P.string('**')
    ).map(lambda inner: _apply_formatting(parse_inner(inner), bold=True))

    strikethrough = (
        P.string('~~') >> P.regex(r'(?:[^~]|~(?!~))+') << P.string('~~')
    ).map(lambda inner: _apply_formatting(parse_inner(inner), strikethrough=True))

    italic = (
        P.string('*') >> P.regex(r'[^*]+') << P.string('*')
    ).map(lambda inner: _apply_formatting(parse_inner(inner), italic=True))

    @P.generate
    def link():
        yield P.string('[')
        text = yield P.regex(r'(?:[^\[\]]|\[[^\[\]]*\])*')
        yield P.string('](')
        url = yield P.regex(r'[^)\s]+')
        yield P.string(')')
        return _apply_formatting(parse_inner(text), link=url)

    literal_run = P.test_char(lambda c: c not in _SPECIAL_CHARS, 'literal').at_least(1).map(
        lambda chars: RichTextSpan(text=''.join(chars))
    )

    # Special character that didn't start a pattern
    special_fallback = P.any_char.map(lambda c: RichTextSpan(text=c))

    def flatten(items):
        flat = []
        for item in items:
            if isinstance(item, list):
                flat.extend(item)
            else:
                flat.append(item)
        return flat

    inline = (
        escaped |
        code |
        bold |
        strikethrough |
        italic |
        link |
        literal_run |
        special_fallback
    ).many().map(flatten)

    return inline


_inline_parser = _make_inline_parser()


def parse_inline_formatting(text: str) -> list[RichTextSpan]:
    if not text:
        return []
    try:
        return _merge_adjacent_spans(_inline_parser.parse(text))
    except P.ParseError as e:
        logger.warning(f"Inline formatting parse error: {e}")
        return [RichTextSpan(text=text)]


def chunk_text(content: str, size: int = MAX_RICH_TEXT_CHARS) -> list[str]:
    if len(content) <= size:
        return [content]
    return [content[i:i + size] for i in range(0, len(content), size)]


def _span_to_notion(span: RichTextSpan) -> list[dict]:
    annotations = {}
    if span.bold:
        annotations["bold"] = True
    if span.italic:
        annotations["italic"] = True
    if span.strikethrough:
        annotations["strikethrough"] = True
    if span.code:
        annotations["code"] = True

    result = []
    for chunk in chunk_text(span.text):
        obj: dict = {"type": "text", "text": {"content": chunk}}
        if span.link:
            obj["text"]["link"] = {"url": span.link}
        if annotations:
            obj["annotations"] = dict(annotations)
        result.append(obj)
    return result


def text_to_rich_text(text: str, inline: bool = True) -> list[dict]:
    """Convert text to a Notion rich_text array, chunked for the API limit.

    Empty text becomes a single space so the block is still valid.
    """
    if not text:
        text = " "
    spans = parse_inline_formatting(text) if inline else [RichTextSpan(text=text)]
    if not spans:
        spans = [RichTextSpan(text=text)]
    result = []
    for span in spans:
        result.extend(_span_to_notion(span))
    return result


# =============================================================================
# Blocks
# =============================================================================

CODE_LANGUAGES = {
    "ts": "typescript", "typescript": "typescript",
    "js": "javascript", "javascript": "javascript",
    "py": "python", "python": "python",
    "sh": "shell", "bash": "shell", "shell": "shell",
    "json": "json",
    "sql": "sql",
    "yaml": "yaml", "yml": "yaml",
    "md": "markdown", "markdown": "markdown",
    "html": "html",
    "css": "css",
    "go": "go",
    "java": "java",
    "ruby": "ruby",
    "rust": "rust",
}


def normalize_code_language(raw: str) -> str:
    return CODE_LANGUAGES.get(raw.strip().lower(), "plain text")


def _text_block(block_type: str, text: str, **extra) -> dict:
    return {
        "object": "block",
        "type": block_type,
        block_type: {"rich_text": text_to_rich_text(text), **extra},
    }


def _code_block(text: str, language: str) -> dict:
    return {
        "object": "block",
        "type": "code",
        "code": {"rich_text": text_to_rich_text(text, inline=False), "language": language},
    }


def _divider_block() -> dict:
    return {"object": "block", "type": "divider", "divider": {}}


HEADING_PATTERN = re.compile(r'^(#{1,3})\s+(.+)$')
TODO_PATTERN = re.compile(r'^[-*]\s+\[( |x|X)\]\s+(.+)$')
QUOTE_PATTERN = re.compile(r'^>\s?(.*)$')
BULLET_PATTERN = re.compile(r'^[-*+]\s+(.+)$')
NUMBERED_PATTERN = re.compile(r'^\d+\.\s+(.+)$')
DIVIDERS = {"---", "***", "___"}


def _single_line_block(stripped: str) -> Optional[dict]:
    """Block for a line that maps to exactly one block, else None."""
    if stripped in DIVIDERS:
        return _divider_block()

    m = HEADING_PATTERN.match(stripped)
    if m:
        return _text_block(f"heading_{len(m.group(1))}", m.group(2))

    # To-dos before bullets: "- [ ] x" is also a valid bullet
    m = TODO_PATTERN.match(stripped)
    if m:
        return _text_block("to_do", m.group(2), checked=m.group(1).lower() == "x")

    m = BULLET_PATTERN.match(stripped)
    if m:
        return _text_block("bulleted_list_item", m.group(1))

    m = NUMBERED_PATTERN.match(stripped)
    if m:
        return _text_block("numbered_list_item", m.group(1))

    return None


def markdown_to_blocks(markdown: str) -> list[dict]:
    """Convert markdown text to a flat list of Notion block objects."""
    lines = markdown.replace("\r\n", "\n").split("\n")
    blocks: list[dict] = []
    paragraph: list[str] = []

    def flush_paragraph():
        text = "\n".join(paragraph).strip()
        paragraph.clear()
        if text:
            blocks.append(_text_block("paragraph", text))

    i = 0
    while i < len(lines):
        line = lines[i]
        stripped = line.strip()

        if stripped.startswith("```"):
            flush_paragraph()
            language = normalize_code_language(stripped[3:])
            i += 1
            code_lines = []
            while i < len(lines) and not lines[i].strip().startswith("```"):
                code_lines.append(lines[i])
                i += 1
            i += 1  # closing fence (or past the end when unterminated)
            blocks.append(_code_block("\n".join(code_lines), language))
            continue

        if not stripped:
            flush_paragraph()
            i += 1
            continue

        if QUOTE_PATTERN.match(stripped):
            flush_paragraph()
            quote_lines = []
            while i < len(lines):
                m = QUOTE_PATTERN.match(lines[i].strip())
                if not m:
                    break
                quote_lines.append(m.group(1))
                i += 1
            blocks.append(_text_block("quote", "\n".join(quote_lines)))
            continue

        block = _single_line_block(stripped)
        if block is not None:
            flush_paragraph()
            blocks.append(block)
        else:
            paragraph.append(line)
        i += 1

    flush_paragraph()
    return blocks
