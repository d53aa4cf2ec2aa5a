"""
Cheque field extraction through the recognition gateway.

The gateway response is untyped. It is validated field by field: invalid
fields are dropped and logged, valid ones are returned. A partial result is
a normal outcome, not a failure.
"""
import threading
from typing import Annotated, Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, BeforeValidator, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from core.config import Settings, get_settings
from core.exceptions import ValidationError
from core.logger import setup_logger
from core.normalize import clean_field
from core.schema import CANDIDATE_FIELDS, CandidateTransaction, FieldValue, NormalizedImage
from llm.client import RecognitionClient, get_client
from llm.prompts import build_system_prompt, build_user_content

logger = setup_logger(__name__)


def create_response_schema() -> Dict[str, Any]:
    """
    Create JSON schema for the extraction response.

    Returns:
        JSON schema dictionary
    """
    field_schema = {
        "type": "object",
        "properties": {
            "value": {"type": ["string", "number", "null"]},
            "confidence": {"type": "number", "minimum": 0.0, "maximum": 1.0},
        },
        "required": ["value", "confidence"],
    }
    return {
        "type": "object",
        "properties": {
            "fields": {
                "type": "object",
                "properties": {name: field_schema for name in CANDIDATE_FIELDS},
                "additionalProperties": False,
            },
            "notes": {"type": ["string", "null"]},
        },
        "required": ["fields"],
    }


class RawField(BaseModel):
    """One field as returned by the gateway, before cleaning."""
    value: Any = None
    confidence: float = Field(..., ge=0.0, le=1.0)


def _wrap_bare_value(default_confidence: float):
    def wrap(v):
        """Accept a bare value as well as a {value, confidence} object."""
        if isinstance(v, dict):
            if "confidence" not in v or v["confidence"] is None:
                return {**v, "confidence": default_confidence}
            return v
        return {"value": v, "confidence": default_confidence}
    return wrap


def validate_extraction(
    raw: Dict[str, Any],
    turn_index: int,
    default_confidence: float = 0.5,
) -> Tuple[CandidateTransaction, List[str]]:
    """
    Validate an untyped gateway response against the candidate shape.

    Args:
        raw: Parsed JSON object from the gateway
        turn_index: Index of the turn that produced the material
        default_confidence: Confidence for fields returned as bare values

    Returns:
        (candidate holding only the valid fields, names of discarded fields)
    """
    fields = raw.get("fields", raw) if isinstance(raw, dict) else {}
    if not isinstance(fields, dict):
        logger.warning("Gateway 'fields' is not an object, nothing extracted")
        return CandidateTransaction(), []

    field_adapter = TypeAdapter(Annotated[RawField, BeforeValidator(_wrap_bare_value(default_confidence))])

    valid: Dict[str, FieldValue] = {}
    discarded: List[str] = []

    for name in CANDIDATE_FIELDS:
        if name not in fields or fields[name] is None:
            continue

        try:
            raw_field = field_adapter.validate_python(fields[name])
        except PydanticValidationError as e:
            logger.warning(f"Discarding field '{name}': invalid shape or confidence ({e.error_count()} errors)")
            discarded.append(name)
            continue

        if raw_field.value is None:
            continue

        cleaned = clean_field(name, raw_field.value)
        if cleaned is None:
            logger.warning(f"Discarding field '{name}': value failed validation")
            discarded.append(name)
            continue

        valid[name] = FieldValue(value=cleaned, confidence=raw_field.confidence, turn_index=turn_index)

    return CandidateTransaction(**valid), discarded


class ExtractionAdapter:
    """Sends cheque material to the recognition gateway and validates the reply."""

    def __init__(self, client: Optional[RecognitionClient] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> RecognitionClient:
        if self._client is None:
            self._client = get_client()
        return self._client

    def extract(
        self,
        image: Optional[NormalizedImage],
        text: Optional[str],
        prior_candidate: Optional[CandidateTransaction],
        turn_index: int = 0,
        abandoned: Optional[threading.Event] = None,
    ) -> CandidateTransaction:
        """
        Extract candidate fields from an image and/or instruction text.

        Args:
            image: Normalized cheque image
            text: Free-text instruction from the caller
            prior_candidate: Fields already collected (sent as context)
            turn_index: Provenance for the returned fields
            abandoned: Set by the caller when it stops waiting; stops retries

        Returns:
            CandidateTransaction holding only the fields read in this call

        Raises:
            ValidationError: If neither image nor text is provided
            ExtractionError: If the gateway call fails
        """
        if image is None and not (text and text.strip()):
            raise ValidationError("An image or a text instruction is required for extraction")

        raw = self.client.call_with_structured_output(
            system_prompt=build_system_prompt(),
            user_content=build_user_content(image, text, prior_candidate),
            response_schema=create_response_schema(),
            abandoned=abandoned,
        )

        candidate, discarded = validate_extraction(
            raw,
            turn_index=turn_index,
            default_confidence=self.settings.extraction_default_confidence,
        )

        logger.info(
            f"Extraction returned {len(candidate.set_fields())} valid fields"
            + (f", discarded: {', '.join(discarded)}" if discarded else "")
        )
        return candidate
