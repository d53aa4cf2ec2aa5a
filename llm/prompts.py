"""
System and user prompts for cheque field extraction.
"""
import json
from typing import Any, Dict, List, Optional

from core.schema import CandidateTransaction, NormalizedImage
from llm.client import image_data_url


def build_system_prompt() -> str:
    """
    Build the system prompt for cheque extraction.

    Returns:
        Complete system prompt string
    """
    return """You are an assistant that extracts information from cheque images for a cheque cashing business ledger.

Extract the following fields when they are present:
- cheque_number: the cheque number (digits, usually printed top right or in the MICR line)
- date: the date written on the cheque, as YYYY-MM-DD
- amount: the cheque amount as a plain decimal number without currency symbols (e.g. 1000.00)
- customer_name: the payee, i.e. the person or company the cheque is made out to
- vendor_name: the clearing vendor, only if the user names one
- customer_id / vendor_id: only if the user gives an explicit id
- bank_name: the drawee bank name if visible

For EACH field you return, give an object {"value": ..., "confidence": ...} where confidence is a number between 0 and 1
describing how legible and certain the value is. If the written and numeric amounts disagree, lower the confidence.

**RULES:**
1. Never guess. Omit any field you cannot read.
2. The user may send only text, for example a correction like "the amount is 250.50". Extract what the text states.
3. "Known fields" are values already collected in this conversation. Only return a known field again if the new material shows a different value.
4. Return ONLY a JSON object of the form {"fields": {...}, "notes": "..."}."""


def build_user_content(
    image: Optional[NormalizedImage],
    text: Optional[str],
    prior_candidate: Optional[CandidateTransaction],
) -> List[Dict[str, Any]]:
    """
    Build user message content parts.

    Args:
        image: Normalized cheque image, if any
        text: Caller instruction text, if any
        prior_candidate: Fields already collected in this session

    Returns:
        List of content parts for the chat completion request
    """
    known = prior_candidate.redacted() if prior_candidate is not None else {}

    lines = []
    if image is not None:
        lines.append("Extract information from this cheque image.")
    if text:
        lines.append(f"User message: {text}")
    lines.append(f"Known fields: {json.dumps(known, ensure_ascii=False, sort_keys=True)}")

    parts: List[Dict[str, Any]] = [{"type": "text", "text": "\n".join(lines)}]
    if image is not None:
        parts.append({
            "type": "image_url",
            "image_url": {"url": image_data_url(image.content, image.mime_type)},
        })
    return parts
