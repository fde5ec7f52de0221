"""Response analysis for the autonomous loop.

Turns one agent invocation's raw output into a :class:`LoopRecord`.

Parsing is an ordered list of strategies, each returning parsed signals or
``None``: a strict JSON parse of the whole output, then the delimited
``---KORERO_STATUS---`` block, then plain-text defaults. The heuristics
(completion phrases, error lines, permission denials, work type) are pure
functions over text so they can be tested in isolation.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Protocol

logger = logging.getLogger(__name__)

STATUS_BLOCK_MARKERS = (
    ("---KORERO_STATUS---", "---END_KORERO_STATUS---"),
    ("---RALPH_STATUS---", "---END_RALPH_STATUS---"),
)

COMPLETE_STATUSES = {"complete", "completed", "done", "success", "finished"}


class WorkType(str, Enum):
    """What kind of work an iteration did."""

    IMPLEMENTATION = "IMPLEMENTATION"
    TESTING = "TESTING"
    DOCUMENTATION = "DOCUMENTATION"
    REFACTORING = "REFACTORING"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Any) -> WorkType:
        if value is None:
            return cls.UNKNOWN
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class LoopRecord:
    """One iteration's outcome. Never mutated after creation."""

    loop_number: int
    files_changed: int = 0
    has_errors: bool = False
    has_completion_signal: bool = False
    exit_signal: bool = False
    files_modified_reported: int = 0
    has_permission_denials: bool = False
    output_length: int = 0
    completion_indicators: int = 0
    error_count: int = 0
    tasks_completed: int = 0
    work_type: WorkType = WorkType.UNKNOWN
    status: str = "UNKNOWN"
    session_id: str | None = None
    parsed_by: str = "none"
    recommendation: str = ""

    @property
    def has_progress(self) -> bool:
        return (
            self.files_changed > 0
            or self.has_completion_signal
            or self.exit_signal
            or self.files_modified_reported > 0
        )

    @property
    def is_test_only(self) -> bool:
        return self.work_type is WorkType.TESTING

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["work_type"] = self.work_type.value
        data["has_progress"] = self.has_progress
        return data

    @classmethod
    def failed(cls, loop_number: int, files_changed: int = 0, output_length: int = 0) -> LoopRecord:
        """Record for an iteration that produced nothing usable."""
        return cls(
            loop_number=loop_number,
            files_changed=files_changed,
            has_errors=True,
            output_length=output_length,
            status="FAILED",
        )


@dataclass
class ParsedSignals:
    """Structured fields recovered by a parser strategy."""

    source: str
    text: str = ""
    status: str | None = None
    exit_signal: bool | None = None
    files_modified: int | None = None
    files_changed: int | None = None
    tasks_completed: int | None = None
    has_errors: bool | None = None
    completion_status: str | None = None
    permission_denials: int = 0
    session_id: str | None = None
    work_type: str | None = None
    recommendation: str | None = None
    extra: dict[str, str] = field(default_factory=dict)

    def merge_missing(self, other: ParsedSignals) -> None:
        """Fill fields still unset here from another parse of the same output."""
        for name in (
            "status", "exit_signal", "files_modified", "tasks_completed",
            "completion_status", "work_type", "recommendation",
        ):
            if getattr(self, name) is None and getattr(other, name) is not None:
                setattr(self, name, getattr(other, name))
        for key, value in other.extra.items():
            self.extra.setdefault(key, value)


class ParserStrategy(Protocol):
    name: str

    def parse(self, text: str) -> ParsedSignals | None: ...


def _to_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "1"):
            return True
        if lowered in ("false", "no", "0"):
            return False
    return None


def _to_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return max(0, value)
    if isinstance(value, float):
        return max(0, int(value)) if math.isfinite(value) else None
    if isinstance(value, (list, tuple)):
        return len(value)
    if isinstance(value, str):
        match = re.match(r"\s*(\d+)", value)
        if match:
            return int(match.group(1))
    return None


class JsonResultParser:
    """Strict JSON parse of the whole output.

    Accepts a single result object, or the agent CLI's array form where the
    final ``{"type": "result"}`` element carries the result.
    """

    name = "json"
    RESULT_FIELDS = ("result", "text", "content")

    def parse(self, text: str) -> ParsedSignals | None:
        stripped = text.strip()
        if not stripped or stripped[0] not in "{[":
            return None
        try:
            data = json.loads(stripped)
        except (json.JSONDecodeError, RecursionError):
            return None

        session_id = None
        if isinstance(data, list):
            objects = [item for item in data if isinstance(item, dict)]
            for item in objects:
                session_id = session_id or item.get("session_id") or item.get("sessionId")
            results = [item for item in objects if item.get("type") == "result"]
            if not results:
                return None
            data = results[-1]

        if not isinstance(data, dict):
            return None
        if not any(key in data for key in self.RESULT_FIELDS):
            return None

        result_text = ""
        for key in self.RESULT_FIELDS:
            value = data.get(key)
            if isinstance(value, str):
                result_text = value
                break

        metadata = data.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}

        def pick(*keys: str) -> Any:
            for key in keys:
                if key in metadata:
                    return metadata[key]
                if key in data:
                    return data[key]
            return None

        has_errors = _to_bool(pick("has_errors", "is_error"))
        if has_errors is None and str(data.get("subtype") or "").startswith("error"):
            has_errors = True

        denials = pick("permission_denials")
        completion_status = pick("completion_status")

        sid = data.get("session_id") or data.get("sessionId") or session_id
        return ParsedSignals(
            source=self.name,
            text=result_text,
            status=str(pick("status")).upper() if pick("status") is not None else None,
            exit_signal=_to_bool(pick("exit_signal", "EXIT_SIGNAL")),
            files_modified=_to_int(pick("files_modified")),
            files_changed=_to_int(pick("files_changed")),
            tasks_completed=_to_int(pick("tasks_completed")),
            has_errors=has_errors,
            completion_status=str(completion_status) if completion_status else None,
            permission_denials=_to_int(denials) or 0,
            session_id=str(sid) if sid else None,
            work_type=str(pick("work_type")) if pick("work_type") is not None else None,
        )


class StatusBlockParser:
    """Parses the delimited KEY: value status block out of free text."""

    name = "status_block"
    KEY_PATTERN = re.compile(r"^\s*([A-Z][A-Z_]*)\s*:\s*(.*?)\s*$")

    def extract_block(self, text: str) -> str | None:
        for begin, end in STATUS_BLOCK_MARKERS:
            start = text.rfind(begin)
            if start == -1:
                continue
            stop = text.find(end, start)
            if stop == -1:
                continue
            return text[start + len(begin):stop]
        return None

    def parse(self, text: str) -> ParsedSignals | None:
        block = self.extract_block(text)
        if block is None:
            return None

        fields: dict[str, str] = {}
        for line in block.splitlines():
            match = self.KEY_PATTERN.match(line)
            if match:
                fields[match.group(1)] = match.group(2)

        tasks = fields.get("TASKS_COMPLETED_THIS_LOOP", fields.get("TASKS_COMPLETED"))
        status = fields.get("STATUS")
        return ParsedSignals(
            source=self.name,
            text=text,
            status=status.strip().upper() if status else None,
            exit_signal=_to_bool(fields.get("EXIT_SIGNAL")) or False,
            files_modified=_to_int(fields.get("FILES_MODIFIED")) or 0,
            tasks_completed=_to_int(tasks) or 0,
            work_type=fields.get("WORK_TYPE"),
            recommendation=fields.get("RECOMMENDATION"),
            extra=fields,
        )


class PlainTextParser:
    """Last resort: no structure, every field stays at its default."""

    name = "heuristic"

    def parse(self, text: str) -> ParsedSignals | None:
        return ParsedSignals(source=self.name, text=text)


DEFAULT_STRATEGIES: tuple[ParserStrategy, ...] = (
    JsonResultParser(),
    StatusBlockParser(),
    PlainTextParser(),
)


# --- Pure classifiers -------------------------------------------------------

COMPLETION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\ball\s+(?:the\s+)?tasks\s+(?:are\s+)?(?:now\s+)?complete(?:d)?\b",
        r"\bnothing\s+(?:left|more|else)\s+to\s+(?:do|implement)\b",
        r"\b(?:project|implementation|work)\s+(?:is\s+)?(?:now\s+)?(?:fully\s+)?complete\b",
        r"\ball\s+(?:requirements|features|items)\s+(?:are\s+)?(?:implemented|complete(?:d)?|done)\b",
        r"\bno\s+(?:further|more|remaining)\s+(?:work|changes|tasks)\s+(?:is\s+|are\s+)?(?:needed|required|remaining)\b",
        r"\bfix_plan(?:\.md)?\s+(?:is\s+)?(?:fully\s+)?complete\b",
        r"\[(?:DONE|COMPLETE)\]",
    )
]

ERROR_PATTERNS = [
    re.compile(p, re.MULTILINE)
    for p in (
        r"^\s*(?:Error|ERROR|error)\s*:",
        r"\[ERROR\]",
        r"\]:\s*error\b",
        r"\bError occurred\b",
        r"\bfailed with error\b",
        r"\b[A-Za-z]*(?:Exception|Error)\s*:",
        r"\b(?:Fatal|FATAL)\b",
        r"^Traceback \(most recent call last\)",
        r"\bpanic:",
        r"""["']error["']\s*:\s*["'][^"']""",
    )
]

_ERROR_TOKEN = re.compile(r"error|exception|fatal|traceback|panic", re.IGNORECASE)

# "error" used as a JSON/YAML key with a benign value is not an error
_BENIGN_ERROR_FIELD = re.compile(
    r"""["']?[\w.-]*errors?[\w.-]*["']?\s*[:=]\s*(?:false|0|null|none|\[\s*\]|\{\s*\}|""|'')""",
    re.IGNORECASE,
)

_STACK_FRAME = re.compile(r"^\s+(?:at\s|File\s\"|\.\.\.|\^)|^\s{2,}\S")

PERMISSION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\bpermission\s+(?:to\s+use\s+\S+\s+)?(?:was\s+|has\s+been\s+)?denied\b",
        r"\b(?:tool|command)\s+(?:use\s+|call\s+)?(?:was\s+)?(?:denied|rejected|blocked)\b",
        r"\bnot\s+(?:in\s+(?:the\s+)?)?allowed\s*[_ ]?tools\b",
        r"\brequires?\s+(?:user\s+)?(?:approval|permission)\s+to\s+(?:run|use|execute)\b",
        r"\byou\s+haven'?t\s+granted\b",
    )
]
_BENIGN_DENIAL_FIELD = re.compile(
    r"""["']?permission_denials["']?\s*:\s*(?:\[\s*\]|0|null|false)""", re.IGNORECASE
)

_TEST_WORDS = re.compile(r"\b(?:tests?|testing|pytest|unit[- ]tests?|test suite|coverage)\b", re.IGNORECASE)
_IMPL_WORDS = re.compile(
    r"\b(?:implement(?:ed|ing)?|added\s+(?:a\s+|the\s+)?(?:feature|function|class|endpoint|module)|"
    r"refactor(?:ed|ing)?|fix(?:ed)?\s+(?:the\s+)?bug|creat(?:ed|ing)\s+(?:a\s+|the\s+)?\w+\.(?:py|ts|js|go|rs))\b",
    re.IGNORECASE,
)


def count_completion_indicators(text: str) -> int:
    """Number of natural-language completion phrases in text."""
    if not text:
        return 0
    return sum(len(pattern.findall(text)) for pattern in COMPLETION_PATTERNS)


def _line_has_error(line: str) -> bool:
    if not _ERROR_TOKEN.search(line):
        return False
    # Stage 2: drop benign "error"-named fields, then require a real error shape
    cleaned = _BENIGN_ERROR_FIELD.sub("", line)
    return any(pattern.search(cleaned) for pattern in ERROR_PATTERNS)


def detect_errors(text: str) -> int:
    """Count logical error occurrences in text.

    Stage 1 flags lines matching an error token. Stage 2 discards matches
    that only come from field names or benign values (``"is_error": false``)
    and folds stack traces and runs of consecutive error lines into a
    single occurrence.
    """
    if not text:
        return 0
    count = 0
    in_block = False
    for line in text.splitlines():
        if _line_has_error(line):
            if not in_block:
                count += 1
            in_block = True
        elif in_block and line.strip() and _STACK_FRAME.match(line):
            continue
        else:
            in_block = False
    return count


def detect_permission_denials(text: str) -> int:
    """Count tool/permission denial phrases in text."""
    if not text:
        return 0
    cleaned = _BENIGN_DENIAL_FIELD.sub("", text)
    return sum(len(pattern.findall(cleaned)) for pattern in PERMISSION_PATTERNS)


def classify_work_type(text: str, reported: str | None = None) -> WorkType:
    """Work type from the agent's report, else a keyword heuristic."""
    work_type = WorkType.parse(reported)
    if work_type is not WorkType.UNKNOWN or not text:
        return work_type
    test_mentions = len(_TEST_WORDS.findall(text))
    impl_mentions = len(_IMPL_WORDS.findall(text))
    if test_mentions >= 3 and impl_mentions == 0:
        return WorkType.TESTING
    if impl_mentions > 0:
        return WorkType.IMPLEMENTATION
    return WorkType.UNKNOWN


def decode_output(raw: bytes | str | None) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return raw


class ResponseAnalyzer:
    """Builds a LoopRecord from one invocation's output.

    ``analyze`` never raises: any failure yields an all-false record.
    """

    def __init__(
        self,
        output_format: str = "json",
        strategies: tuple[ParserStrategy, ...] = DEFAULT_STRATEGIES,
    ):
        self.output_format = output_format
        self.strategies = strategies

    def parse(self, text: str) -> ParsedSignals:
        """Run the strategies in order and return the first match.

        A JSON result is enriched with any status block inside its result
        text.
        """
        for strategy in self.strategies:
            signals = strategy.parse(text)
            if signals is None:
                continue
            if signals.source == JsonResultParser.name and signals.text:
                block = StatusBlockParser().parse(signals.text)
                if block is not None:
                    signals.merge_missing(block)
            return signals
        return ParsedSignals(source="none", text=text)

    def analyze(
        self,
        raw_output: bytes | str | None,
        loop_number: int,
        files_changed: int = 0,
        returncode: int = 0,
    ) -> LoopRecord:
        """Analyze raw output.

        Args:
            raw_output: Captured stdout of the agent.
            loop_number: Iteration number (>= 1).
            files_changed: Changed-file count from the git diff.
            returncode: Agent exit status; non-zero marks a failed iteration.
        """
        try:
            return self._analyze(raw_output, loop_number, files_changed, returncode)
        except Exception as e:
            logger.warning(f"Response analysis failed on loop {loop_number}: {e}")
            raw_len = len(raw_output) if isinstance(raw_output, (bytes, str)) else 0
            return LoopRecord(loop_number=loop_number, files_changed=max(0, files_changed), output_length=raw_len)

    def _analyze(
        self,
        raw_output: bytes | str | None,
        loop_number: int,
        files_changed: int,
        returncode: int,
    ) -> LoopRecord:
        output_length = len(raw_output) if isinstance(raw_output, bytes) else len(decode_output(raw_output).encode())
        text = decode_output(raw_output)
        files_changed = max(0, files_changed)

        if not text.strip():
            logger.debug(f"Loop {loop_number}: empty agent output")
            record = LoopRecord(loop_number=loop_number, files_changed=files_changed, output_length=output_length)
            return replace(record, has_errors=True, status="FAILED") if returncode != 0 else record

        signals = self.parse(text)
        if self.output_format == "json" and signals.source != JsonResultParser.name:
            logger.debug(f"Loop {loop_number}: expected JSON output, fell back to {signals.source}")

        body = signals.text or text
        indicators = count_completion_indicators(body)
        status = signals.status or "UNKNOWN"
        completion_signal = status in {s.upper() for s in COMPLETE_STATUSES} or (
            signals.completion_status is not None
            and signals.completion_status.strip().lower() in COMPLETE_STATUSES
        )
        if completion_signal:
            indicators += 1

        if signals.has_errors is not None:
            error_count = detect_errors(body) if signals.has_errors else 0
            has_errors = signals.has_errors
        else:
            error_count = detect_errors(body)
            has_errors = error_count > 0

        denials = signals.permission_denials + detect_permission_denials(body)
        if signals.files_changed is not None:
            files_changed = max(files_changed, signals.files_changed)

        record = LoopRecord(
            loop_number=loop_number,
            files_changed=files_changed,
            has_errors=has_errors,
            has_completion_signal=completion_signal,
            exit_signal=bool(signals.exit_signal),
            files_modified_reported=signals.files_modified or 0,
            has_permission_denials=denials > 0,
            output_length=output_length,
            completion_indicators=indicators,
            error_count=error_count,
            tasks_completed=signals.tasks_completed or 0,
            work_type=classify_work_type(body, signals.work_type),
            status=status,
            session_id=signals.session_id,
            parsed_by=signals.source,
            recommendation=signals.recommendation or "",
        )

        if returncode != 0:
            # A failed invocation cannot claim completion
            record = replace(
                record,
                has_errors=True,
                exit_signal=False,
                has_completion_signal=False,
                status="FAILED",
            )
        return record
