"""Structured document extraction from free-form model text.

Steps, in order:
1. Strip markdown fences and a leading ``json`` language tag.
2. Slice from the first ``{`` to the last ``}``.
3. Parse with ``json.loads``.
4. On an unterminated string, repair once (see ``json_repair``) and re-parse.
5. Validate item arrays against the schema, dropping items without identity.

``extract()`` never raises for malformed input; the outcome is reported via
``StructuredDocument.parse_status``.
"""

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ValidationError

from genpipe.errors import (
    ErrorKind,
    SchemaValidationError,
    UnrecoverableParseError,
)
from genpipe.schemas.storyboard import StructuredSchema
from genpipe.services.json_repair import ends_in_unterminated_string, repair_truncated

logger = logging.getLogger(__name__)

FENCE = "```"
LOG_EDGE_CHARS = 500

# "json", "JSON", "json:", "json:json", "json json"
_LANG_TAG = re.compile(r"^\s*(?:json\b\s*:?\s*)+", re.IGNORECASE)


class ParseStatus(str, Enum):
    OK = "ok"
    REPAIRED = "repaired"
    FAILED = "failed"


@dataclass
class StructuredDocument:
    raw_text: str
    cleaned_text: str
    parsed: Optional[StructuredSchema] = None
    parse_status: ParseStatus = ParseStatus.FAILED
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    dropped_items: int = 0

    @property
    def ok(self) -> bool:
        return self.parse_status != ParseStatus.FAILED

    def require(self) -> StructuredSchema:
        """Return the parsed document or raise the tagged failure."""
        if self.parsed is not None and self.ok:
            return self.parsed
        if self.error_kind == ErrorKind.SCHEMA_VALIDATION:
            raise SchemaValidationError(self.error or "No valid items in model output")
        raise UnrecoverableParseError(
            self.error or "Could not parse model output", self.raw_text
        )


def strip_fences(text: str) -> str:
    """Take the content between the first and last fence markers.

    A single (unclosed) fence from a truncated stream is treated as opening
    the block.
    """
    text = text.strip()
    start = text.find(FENCE)
    if start == -1:
        return text

    end = text.rfind(FENCE)
    inner = text[start + len(FENCE):end] if end > start else text[start + len(FENCE):]
    inner = _LANG_TAG.sub("", inner, count=1)
    return inner.replace(FENCE, "").strip()


def extract_json_span(text: str) -> str:
    """Slice to the outermost ``{...}`` span when one exists."""
    first = text.find("{")
    last = text.rfind("}")
    if first != -1 and last > first:
        return text[first:last + 1]
    return text


def _identity_keys(model: type[BaseModel]) -> set[str]:
    keys: set[str] = set()
    for name, info in model.model_fields.items():
        if info.is_required():
            keys.add(name)
            if info.alias:
                keys.add(info.alias)
    return keys


def validate_item(model: type[BaseModel], item: Any) -> Optional[BaseModel]:
    """Validate one array item.

    Optional fields that fail validation fall back to their defaults; a
    missing or invalid identity field drops the item.
    """
    if not isinstance(item, dict):
        return None
    try:
        return model.model_validate(item)
    except ValidationError as e:
        bad_keys = {err["loc"][0] for err in e.errors() if err["loc"]}

    if bad_keys & _identity_keys(model):
        return None

    trimmed = {k: v for k, v in item.items() if k not in bad_keys}
    try:
        return model.model_validate(trimmed)
    except ValidationError:
        return None


def validate_document(
    schema: type[StructuredSchema], data: dict[str, Any]
) -> tuple[StructuredSchema, int]:
    """Validate every item array of ``schema``.

    Returns:
        The validated document and the number of dropped items.

    Raises:
        SchemaValidationError: If no valid item remains in any array.
    """
    fields: dict[str, Any] = {
        k: v for k, v in data.items() if k not in schema.item_fields
    }
    dropped = 0
    kept = 0

    for field_name, item_model in schema.item_fields.items():
        raw_items = data.get(field_name)
        if raw_items is None:
            raw_items = []
        elif not isinstance(raw_items, list):
            logger.warning(f"Field '{field_name}' is not an array; ignoring it")
            raw_items = []

        valid = []
        for position, item in enumerate(raw_items):
            model = validate_item(item_model, item)
            if model is None:
                dropped += 1
                logger.warning(
                    "Dropping %s[%d]: missing required identity field(s) %s",
                    field_name, position, sorted(_identity_keys(item_model)),
                )
                continue
            valid.append(model)
        fields[field_name] = valid
        kept += len(valid)

    if kept == 0:
        raise SchemaValidationError(
            f"No valid items in {', '.join(schema.item_fields)} ({dropped} dropped)"
        )

    try:
        return schema.model_validate(fields), dropped
    except ValidationError as e:
        raise SchemaValidationError(str(e)) from e


class StructuredExtractor:
    """Turns raw model text into a validated ``StructuredDocument``."""

    def __init__(self, truncatable_fields: Iterable[str] = ("description",)) -> None:
        self._truncatable_fields = tuple(truncatable_fields)

    def extract(self, raw_text: str, schema: type[StructuredSchema]) -> StructuredDocument:
        raw_text = raw_text or ""
        unfenced = strip_fences(raw_text)
        cleaned = extract_json_span(unfenced)
        doc = StructuredDocument(raw_text=raw_text, cleaned_text=cleaned)

        data, status = self._parse(unfenced, cleaned, doc)
        if data is None:
            self._log_failure(doc)
            return doc

        if not isinstance(data, dict):
            doc.error = f"Top-level JSON is {type(data).__name__}, expected object"
            doc.error_kind = ErrorKind.UNRECOVERABLE_PARSE
            self._log_failure(doc)
            return doc

        try:
            doc.parsed, doc.dropped_items = validate_document(schema, data)
        except SchemaValidationError as e:
            doc.error = str(e)
            doc.error_kind = ErrorKind.SCHEMA_VALIDATION
            self._log_failure(doc)
            return doc

        doc.parse_status = status
        if status == ParseStatus.REPAIRED:
            logger.info("Recovered truncated model output (%d chars)", len(doc.cleaned_text))
        return doc

    def _parse(
        self, unfenced: str, cleaned: str, doc: StructuredDocument
    ) -> tuple[Any, ParseStatus]:
        try:
            return json.loads(cleaned), ParseStatus.OK
        except (json.JSONDecodeError, RecursionError) as e:
            first_error = e

        # The span slice may have cut off the truncated tail; repair from the
        # first brace to the end instead.
        brace = unfenced.find("{")
        tail = unfenced[brace:] if brace != -1 else unfenced

        if not ends_in_unterminated_string(tail):
            doc.error = f"Invalid JSON: {first_error}"
            doc.error_kind = ErrorKind.MALFORMED_RESPONSE
            return None, ParseStatus.FAILED

        logger.warning("Incomplete JSON detected (unterminated string); attempting repair")
        repaired = repair_truncated(tail, self._truncatable_fields)
        if repaired is None:
            doc.error = f"Unterminated string outside repairable fields: {first_error}"
            doc.error_kind = ErrorKind.UNRECOVERABLE_PARSE
            return None, ParseStatus.FAILED

        try:
            data = json.loads(repaired)
        except (json.JSONDecodeError, RecursionError) as e:
            doc.error = f"Repair failed: {e}"
            doc.error_kind = ErrorKind.UNRECOVERABLE_PARSE
            return None, ParseStatus.FAILED

        doc.cleaned_text = repaired
        return data, ParseStatus.REPAIRED

    @staticmethod
    def _log_failure(doc: StructuredDocument) -> None:
        logger.error("Structured extraction failed: %s", doc.error)
        logger.error("Response text (first %d chars): %s", LOG_EDGE_CHARS, doc.raw_text[:LOG_EDGE_CHARS])
        logger.error(
            "Response text (last %d chars): %s",
            LOG_EDGE_CHARS, doc.raw_text[-LOG_EDGE_CHARS:],
        )
