"""Turn-completion and content classification for raw agent output.

Agent processes give no structured "done" signal, so completion is guessed
from the text itself and from how long the stream has been silent.
`classify` is a pure function of (buffer, silence); the patterns and
thresholds it uses come from a `ClassifierConfig` so they can be tuned or
swapped in tests.
"""

import html
import math
import re
from dataclasses import dataclass

from team_orchestrator.db.models import (
    CodeBlock,
    CompletionResult,
    ContentMetadata,
    Diagnostic,
    FileOperation,
    ParsedContent,
    ProgressInfo,
)


@dataclass(frozen=True)
class CompletionPattern:
    name: str
    regex: re.Pattern
    confidence: float


def _tiered(patterns: list[tuple[str, str]], base: float = 0.7, step: float = 0.05):
    return tuple(
        CompletionPattern(name, re.compile(regex), round(base + i * step, 2))
        for i, (name, regex) in enumerate(patterns)
    )


DEFAULT_COMPLETION_PATTERNS = _tiered([
    ("trailing_newline", r"\n\s*$"),
    ("sentence_end", r"[.!?]\s*$"),
    ("code_fence", r"```\s*$"),
    ("separator", r"---\s*$"),
    ("prompt", r"\n>\s*$"),
    ("checklist", r"\[[✓✗]\]\s*$"),
])

DEFAULT_NATURAL_ENDINGS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"hope this helps|let me know if you need|feel free to ask",
        r"that should (?:do it|work)|is there anything else",
        r"does this make sense|any questions",
        r"happy to help|glad to assist",
    )
)


@dataclass(frozen=True)
class ClassifierConfig:
    completion_patterns: tuple[CompletionPattern, ...] = DEFAULT_COMPLETION_PATTERNS
    natural_endings: tuple[re.Pattern, ...] = DEFAULT_NATURAL_ENDINGS
    silence_threshold: float = 3.0
    quick_silence_threshold: float = 2.0
    min_response_length: int = 10
    max_buffer_size: int = 50_000
    code_block_confidence: float = 0.9
    natural_end_confidence: float = 0.6
    timeout_base_confidence: float = 0.5
    timeout_length_weight: float = 0.3
    timeout_full_length: int = 200


DEFAULT_CONFIG = ClassifierConfig()


# ── Content patterns ─────────────────────────────────────────────────────────

CODE_BLOCK = re.compile(r"```(\w+)?\n(.*?)```", re.DOTALL)
INLINE_CODE = re.compile(r"`([^`]+)`")
FILE_CREATED = re.compile(
    r"(?:Created?|Wrote|Generated)\s+(?:file\s+)?[\"`']?([^\"`'\n]+)[\"`']?", re.IGNORECASE
)
FILE_MODIFIED = re.compile(
    r"(?:Modified|Updated|Changed)\s+(?:file\s+)?[\"`']?([^\"`'\n]+)[\"`']?", re.IGNORECASE
)
ERROR = re.compile(r"(?:Error|Exception|Failed|ERROR):\s*(.+)", re.IGNORECASE)
WARNING = re.compile(r"(?:Warning|WARN):\s*(.+)", re.IGNORECASE)
PROGRESS = re.compile(r"(?:Progress|Completed?|Done):\s*(\d+(?:\.\d+)?)%?", re.IGNORECASE)
STEP = re.compile(r"(?:Step|Phase)\s+(\d+)(?:\s*of\s*(\d+))?", re.IGNORECASE)
THINKING = re.compile(r"I'm thinking about|Let me think|I need to consider", re.IGNORECASE)
ACTION = re.compile(r"I'll|I will|Let me|I can", re.IGNORECASE)
URL = re.compile(r"https?://[^\s]+")

ANSI = re.compile(r"\x1b\[[0-9;]*m")
PROMPT_GLYPH = re.compile(r"^\s*[>$#]\s*", re.MULTILINE)
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
SENTENCE_SPLIT = re.compile(r"[.!?]+")


# ── Completion ────────────────────────────────────────────────────────────────


def clean_output(buffer: str, config: ClassifierConfig = DEFAULT_CONFIG) -> str:
    """Strip terminal noise from raw output and bound its size."""
    cleaned = ANSI.sub("", buffer)
    cleaned = PROMPT_GLYPH.sub("", cleaned)
    cleaned = cleaned.replace("\r\n", "\n").replace("\r", "\n")
    cleaned = CONTROL_CHARS.sub("", cleaned)
    if len(cleaned) > config.max_buffer_size:
        cleaned = cleaned[-config.max_buffer_size:]
    return cleaned


def classify(
    buffer: str,
    silence: float,
    config: ClassifierConfig = DEFAULT_CONFIG,
    quick: bool = False,
) -> CompletionResult:
    """Decide whether an agent's turn is over.

    `silence` is the number of seconds since the last byte of output. The
    result carries the highest-confidence rule that fired and, when complete,
    the parsed content of the buffer.
    """
    text = clean_output(buffer, config)
    result = CompletionResult(
        is_complete=False,
        length=len(text),
        lines=text.count("\n") + 1,
        silence=silence,
    )

    if len(text) < config.min_response_length:
        result.reason = "insufficient_length"
        return result

    _apply_patterns(text, config, result)

    threshold = config.quick_silence_threshold if quick else config.silence_threshold
    if silence >= threshold:
        length_score = min(len(text) / config.timeout_full_length, 1.0)
        confidence = config.timeout_base_confidence + length_score * config.timeout_length_weight
        if confidence > result.confidence:
            result.is_complete = True
            result.confidence = round(confidence, 4)
            result.reason = f"timeout_{int(threshold * 1000)}ms"

    if result.is_complete:
        result.parsed = parse_content(text)
    return result


def _apply_patterns(text: str, config: ClassifierConfig, result: CompletionResult):
    for pattern in config.completion_patterns:
        if pattern.regex.search(text):
            _raise_confidence(result, pattern.confidence, f"pattern_{pattern.name}")
            break

    blocks = list(CODE_BLOCK.finditer(text))
    if blocks and blocks[-1].group(0).endswith("```"):
        _raise_confidence(result, config.code_block_confidence, "code_block_complete")

    parts = SENTENCE_SPLIT.split(text)
    sentences = [p for p in parts if p.strip()]
    if len(sentences) >= 2:
        trailing = parts[-1].strip()
        if not trailing or is_natural_end(text, config):
            _raise_confidence(result, config.natural_end_confidence, "natural_language_end")


def _raise_confidence(result: CompletionResult, confidence: float, reason: str):
    result.is_complete = True
    if confidence > result.confidence:
        result.confidence = confidence
        result.reason = reason


def is_natural_end(text: str, config: ClassifierConfig = DEFAULT_CONFIG) -> bool:
    return any(p.search(text) for p in config.natural_endings)


# ── Content extraction ───────────────────────────────────────────────────────


def classify_type(text: str) -> str:
    has_code = bool(CODE_BLOCK.search(text))
    has_action = bool(ACTION.search(text))

    if ERROR.search(text):
        return "error"
    if WARNING.search(text) and not has_code and not has_action:
        return "warning"
    if PROGRESS.search(text):
        return "progress"
    if THINKING.search(text) and not has_code and not has_action:
        return "thinking"
    if has_code and has_action:
        return "mixed"
    if has_code:
        return "code"
    if FILE_CREATED.search(text) or FILE_MODIFIED.search(text):
        return "file_operation"
    if has_action:
        return "action"
    return "text"


def extract_main_text(text: str) -> str:
    stripped = CODE_BLOCK.sub("", text)
    stripped = INLINE_CODE.sub("", stripped)
    return re.sub(r"\n{3,}", "\n\n", stripped).strip()


def extract_code_blocks(text: str) -> list[CodeBlock]:
    return [
        CodeBlock(language=m.group(1) or "text", code=m.group(2).strip(), index=m.start())
        for m in CODE_BLOCK.finditer(text)
    ]


def extract_file_operations(text: str) -> list[FileOperation]:
    ops = [
        FileOperation(kind="created", path=m.group(1).strip(), context=m.group(0))
        for m in FILE_CREATED.finditer(text)
    ]
    ops += [
        FileOperation(kind="modified", path=m.group(1).strip(), context=m.group(0))
        for m in FILE_MODIFIED.finditer(text)
    ]
    return ops


def extract_progress(text: str) -> ProgressInfo | None:
    info = ProgressInfo()
    if m := PROGRESS.search(text):
        info.percentage = float(m.group(1))
    if m := STEP.search(text):
        info.step = int(m.group(1))
        info.total = int(m.group(2)) if m.group(2) else None
    if info.percentage is None and info.step is None:
        return None
    return info


def extract_metadata(text: str) -> ContentMetadata:
    words = len(text.split())
    return ContentMetadata(
        word_count=words,
        line_count=text.count("\n") + 1,
        has_code_blocks=bool(CODE_BLOCK.search(text)),
        has_urls=bool(URL.search(text)),
        contains_thinking=bool(THINKING.search(text)),
        contains_actions=bool(ACTION.search(text)),
        estimated_read_time=math.ceil(words / 200),
    )


def parse_content(text: str) -> ParsedContent:
    """Break a (cleaned) response into its typed parts."""
    return ParsedContent(
        raw=text,
        type=classify_type(text),
        text=extract_main_text(text),
        code_blocks=extract_code_blocks(text),
        files=extract_file_operations(text),
        errors=[Diagnostic(m.group(1).strip(), "error") for m in ERROR.finditer(text)],
        warnings=[Diagnostic(m.group(1).strip(), "warning") for m in WARNING.finditer(text)],
        progress=extract_progress(text),
        urls=URL.findall(text),
        metadata=extract_metadata(text),
    )


# ── Formatting ────────────────────────────────────────────────────────────────


def format_content(parsed: ParsedContent, fmt: str = "text") -> str:
    if fmt == "markdown":
        sections = [parsed.text] if parsed.text else []
        for block in parsed.code_blocks:
            sections.append(f"\n```{block.language}\n{block.code}\n```\n")
        return "\n".join(sections).strip()

    if fmt == "html":
        sections = []
        if parsed.text:
            body = html.escape(parsed.text).replace("\n", "<br>")
            sections.append(f'<div class="response-text">{body}</div>')
        for block in parsed.code_blocks:
            sections.append(
                f'<pre class="code-block" data-language="{html.escape(block.language)}">'
                f"<code>{html.escape(block.code)}</code></pre>"
            )
        return f'<div class="parsed-response">{"".join(sections)}</div>'

    if fmt != "text":
        raise ValueError(f"Unknown format: {fmt}")

    sections = [parsed.text] if parsed.text else []
    for block in parsed.code_blocks:
        sections.append(f"\n[Code - {block.language}]:\n{block.code}\n")
    if parsed.files:
        ops = ", ".join(f"{f.kind}: {f.path}" for f in parsed.files)
        sections.append(f"\nFile operations: {ops}")
    if parsed.errors:
        sections.append(f"\nErrors: {', '.join(e.message for e in parsed.errors)}")
    return "\n".join(sections).strip()


def completion_to_dict(result: CompletionResult) -> dict:
    data = {
        "isComplete": result.is_complete,
        "confidence": result.confidence,
        "reason": result.reason,
        "length": result.length,
        "lines": result.lines,
        "silence": result.silence,
    }
    if result.parsed:
        parsed = result.parsed
        data["parsed"] = {
            "type": parsed.type,
            "text": parsed.text,
            "codeBlocks": [{"language": b.language, "code": b.code} for b in parsed.code_blocks],
            "files": [{"kind": f.kind, "path": f.path} for f in parsed.files],
            "errors": [e.message for e in parsed.errors],
            "warnings": [w.message for w in parsed.warnings],
            "progress": parsed.progress.percentage if parsed.progress else None,
            "urls": parsed.urls,
        }
    return data
