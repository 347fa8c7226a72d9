import binascii
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx

from . import config
from .errors import ConfigurationError, GenerationError, QuotaExceeded
from .still_image import StillImage

logger = logging.getLogger(__name__)

# This module uses direct REST API calls to the Gemini API with API key authentication.
# Every call is a single request/response; retries belong to the stylist.

BLOCKING_FINISH_REASONS = {"IMAGE_SAFETY", "SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII"}

ANALYZE_PROMPT = (
    "Analyze this image of a clothing item. Provide a highly detailed description of its color(s), "
    "hue(s), texture, and any patterns. Be very specific, e.g., 'deep cerulean blue with a slight "
    "teal undertone' instead of just 'blue'."
)

JUDGE_PROMPT = """You are an expert fashion quality control judge.
You will be given the original clothing item, the AI-generated image of a model wearing it, and the original description.
Your task is to determine if the generated image is a high-quality, accurate match.

CRITERIA:
1.  **Color Accuracy:** Does the item in the generated image perfectly match the original description: "{description}"? Check hues, saturation, and tones.
2.  **Design Fidelity:** Are the patterns, cut, and details of the item faithfully reproduced?
3.  **Length Accuracy:** Does the length of the clothing in the generated image (e.g., knee-length, floor-length) match the original item?
4.  **Integration Quality:** Does the clothing look natural on the model? Are there any weird artifacts?

Respond with a JSON object.
- If it's a perfect or very close match, set "decision" to "accept" and provide brief positive "feedback".
- If it's not a good match, set "decision" to "refine" and provide specific, actionable "feedback" for the AI to fix the image on the next try (e.g., "The dress color is too bright, it needs to be a deeper mustard yellow.")."""

FILTER_PROMPT = """You are a strict image comparison expert. You will receive one "Original Image" and a list of "Candidate Images".
Your goal is to identify which candidates show the person in DIFFERENT clothing.

**Critical Instructions:**
1.  For each Candidate Image, compare it to the Original Image.
2.  Your ONLY criterion is the clothing. Ignore minor changes in lighting, pose, or background.
3.  If a candidate's clothing is identical, nearly identical, or the same type and color as the original, it is a MATCH and must be excluded.
4.  Only include a candidate's index if the clothing is UNDENIABLY and SIGNIFICANTLY different (e.g., a dress changed to a sweatsuit).

**Output Format:**
Respond ONLY with a JSON object. It must have one key: "changed_indices".
The value must be an array of numbers representing the 0-based indices of the candidates with different clothing.
If NO candidates have different clothing, you MUST return an empty array: `[]`. Do not guess."""

_PRESERVATION_RULE = (
    "- **Strict Preservation (Most Important Rule):** You MUST preserve the model's exact pose, facial "
    "expression, hair, body shape, and skin tone from the original photo. The background must also remain "
    "completely unchanged. The ONLY thing you are allowed to change is the clothing."
)


@dataclass(frozen=True)
class ResponsePart:
    """One part of a generateContent reply: inline image data or text."""

    text: Optional[str] = None
    mime_type: Optional[str] = None
    data: Optional[str] = None

    @property
    def is_image(self) -> bool:
        return bool(self.data)

    def to_image(self) -> StillImage:
        try:
            return StillImage.from_inline_data(self.mime_type or "image/png", self.data or "")
        except (binascii.Error, ValueError) as e:
            raise GenerationError(
                f"Gemini returned undecodable inline image data: {e}", GenerationError.PROVIDER_REJECTED
            ) from e


@dataclass(frozen=True)
class JudgeVerdict:
    decision: str
    feedback: str

    @property
    def accepted(self) -> bool:
        return self.decision == "accept"


@dataclass(frozen=True)
class ParsedVerdict:
    decision: str
    feedback: str


@dataclass(frozen=True)
class ChangedIndices:
    indices: List[int]


@dataclass(frozen=True)
class UnparsableReply:
    raw_text: str
    reason: str


def resolve_api_key(api_key: Optional[str] = None) -> str:
    """Explicit (session) key first, then the process-wide default."""
    key = (api_key or "").strip() or config.get_default_api_key()
    if not key:
        raise ConfigurationError(
            "GEMINI_API_KEY or GOOGLE_API_KEY environment variable is not set and no session key was provided."
        )
    return key


def image_part(image: StillImage) -> Dict[str, Any]:
    return {"inline_data": {"mime_type": image.mime_type, "data": image.base64}}


def text_part(text: str) -> Dict[str, Any]:
    return {"text": text}


def build_style_prompt(description: str, refinement_feedback: str = "") -> str:
    if refinement_feedback:
        return f"""You are an expert virtual stylist. Your task is to correct a failed attempt at dressing a model.
The provided collage contains:
1. The model who needs to be styled.
2. The target fashion item they should wear.
3. A previous, incorrect image you generated.

**Your Goal:** Generate a NEW, single, photorealistic image of the model wearing the fashion item, fixing the previous errors.

**Feedback to address:** You MUST incorporate this feedback: "{refinement_feedback}"

**Crucial Rules:**
{_PRESERVATION_RULE}
- **Exact Clothing Match:** The clothing on the model must be an exact replica of the target fashion item. Use this detailed description for accuracy: "{description}". Pay close attention to the item's length, fit, color, and pattern.
- **Final Output:** Your output must be a single, clean image of the newly styled model. Do not include elements from the collage."""

    return f"""You are an expert virtual stylist. Your task is to dress a model with a fashion item.
The provided collage contains a person (the model) and a piece of clothing (the fashion item).

**Your Goal:** Generate a new, single, photorealistic image of the model wearing the fashion item.

**Crucial Rules:**
{_PRESERVATION_RULE}
- **Exact Clothing Match:** The clothing on the model must be an exact replica of the fashion item from the collage. Use this detailed description for accuracy: "{description}". Pay close attention to the item's length, fit, color, and pattern.
- **Natural Fit:** The clothing must look natural on the model, fitting their body and pose correctly.
- **Final Output:** Your output must be a single, clean image of the newly styled model. Do not include the separate fashion item in your final image."""


async def _gemini_post_json(
    client: httpx.AsyncClient,
    *,
    url: str,
    headers: Dict[str, str],
    payload: Dict[str, Any],
) -> httpx.Response:
    """
    Thin wrapper for Gemini HTTP calls so tests can stub the network (monkeypatch).
    """
    return await client.post(url, headers=headers, json=payload)


def _provider_error(response_text: str) -> Dict[str, Any]:
    try:
        body = json.loads(response_text or "")
    except ValueError:
        return {}
    err = body.get("error") if isinstance(body, dict) else None
    return err if isinstance(err, dict) else {}


def is_quota_exhausted(status_code: int, error_text: str) -> bool:
    """
    Structured status (``error.status == RESOURCE_EXHAUSTED``) wins; a bare 429 only
    counts when its body talks about quota.
    """
    err = _provider_error(error_text)
    if str(err.get("status", "")).upper() == "RESOURCE_EXHAUSTED":
        return True
    if status_code == 429:
        text = (error_text or "").lower()
        return "resource_exhausted" in text or "quota" in text
    return False


def is_credential_rejection(status_code: int, error_text: str) -> bool:
    if status_code in (401, 403):
        return True
    if status_code == 400:
        err = _provider_error(error_text)
        for detail in err.get("details") or []:
            if isinstance(detail, dict) and detail.get("reason") == "API_KEY_INVALID":
                return True
        return "api key not valid" in (error_text or "").lower()
    return False


def _raise_for_response(response: httpx.Response, model_name: str) -> None:
    if response.is_success:
        return
    status = response.status_code
    error_text = response.text or ""
    message = _provider_error(error_text).get("message") or error_text[:500]
    logger.error(f"Gemini API error ({model_name}): {status} - {error_text[:500]}")

    if is_quota_exhausted(status, error_text):
        raise QuotaExceeded(f"Gemini API quota exceeded ({status} RESOURCE_EXHAUSTED): {message}", status_code=status)
    if is_credential_rejection(status, error_text):
        raise GenerationError(
            f"Gemini API rejected the API key ({status}): {message}", GenerationError.CREDENTIAL, status_code=status
        )
    raise GenerationError(
        f"Gemini API error: {status} - {message}", GenerationError.PROVIDER_REJECTED, status_code=status
    )


async def _generate_content(
    *,
    model_name: str,
    parts: List[Dict[str, Any]],
    api_key: Optional[str],
    timeout: float,
    generation_config: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    key = resolve_api_key(api_key)
    endpoint = f"{config.get_base_url()}/{model_name}:generateContent"
    payload: Dict[str, Any] = {"contents": [{"role": "user", "parts": parts}]}
    if generation_config:
        payload["generationConfig"] = generation_config

    logger.info(f"Calling Gemini {model_name} with {len(parts)} part(s)")
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await _gemini_post_json(
                client,
                url=f"{endpoint}?key={key}",
                headers={"Content-Type": "application/json"},
                payload=payload,
            )
    except httpx.HTTPError as e:
        raise GenerationError(f"Network error calling Gemini {model_name}: {e}", GenerationError.NETWORK) from e

    _raise_for_response(response, model_name)
    try:
        data = response.json()
    except ValueError as e:
        raise GenerationError(
            f"Gemini {model_name} returned a non-JSON body", GenerationError.PROVIDER_REJECTED
        ) from e
    return data if isinstance(data, dict) else {}


def _candidate_parts(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    candidates = data.get("candidates") or []
    if not candidates:
        return []
    content = (candidates[0] or {}).get("content") or {}
    return [p for p in (content.get("parts") or []) if isinstance(p, dict)]


def _response_text(data: Dict[str, Any]) -> str:
    return "".join(str(p["text"]) for p in _candidate_parts(data) if p.get("text"))


def parse_response_parts(raw_parts: Sequence[Dict[str, Any]]) -> List[ResponsePart]:
    parts: List[ResponsePart] = []
    for raw in raw_parts:
        # snake_case (REST docs) or camelCase (what the API actually returns)
        inline = raw.get("inline_data") or raw.get("inlineData")
        if isinstance(inline, dict) and inline.get("data"):
            parts.append(
                ResponsePart(
                    mime_type=inline.get("mime_type") or inline.get("mimeType") or "image/png",
                    data=inline["data"],
                )
            )
        elif "text" in raw:
            parts.append(ResponsePart(text=str(raw.get("text") or "")))
    return parts


def first_image(parts: Sequence[ResponsePart]) -> Optional[StillImage]:
    for part in parts:
        if part.is_image:
            return part.to_image()
    return None


def first_text(parts: Sequence[ResponsePart]) -> Optional[str]:
    for part in parts:
        if part.text:
            return part.text
    return None


def _strip_code_fences(text: str) -> str:
    out = (text or "").strip()
    if out.startswith("```"):
        out = re.sub(r"^```[a-zA-Z0-9_-]*\s*", "", out).strip()
        out = re.sub(r"\s*```$", "", out).strip()
    return out


def _load_json_object(text: str) -> Union[Dict[str, Any], UnparsableReply]:
    try:
        parsed = json.loads(_strip_code_fences(text))
    except ValueError as e:
        return UnparsableReply(raw_text=text, reason=f"invalid JSON: {e}")
    if not isinstance(parsed, dict):
        return UnparsableReply(raw_text=text, reason="not a JSON object")
    return parsed


def parse_judge_reply(text: str) -> Union[ParsedVerdict, UnparsableReply]:
    obj = _load_json_object(text)
    if isinstance(obj, UnparsableReply):
        return obj
    decision = obj.get("decision")
    feedback = obj.get("feedback")
    if feedback is None:
        feedback = ""
    if not isinstance(decision, str) or not isinstance(feedback, str):
        return UnparsableReply(raw_text=text, reason="missing decision or non-string feedback")
    return ParsedVerdict(decision=decision, feedback=feedback)


def parse_filter_reply(text: str) -> Union[ChangedIndices, UnparsableReply]:
    obj = _load_json_object(text)
    if isinstance(obj, UnparsableReply):
        return obj
    raw_indices = obj.get("changed_indices")
    if not isinstance(raw_indices, list):
        return UnparsableReply(raw_text=text, reason="changed_indices is not an array")
    indices = []
    for value in raw_indices:
        # JSON numbers may come back as 1.0
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        if float(value).is_integer():
            indices.append(int(value))
    return ChangedIndices(indices=indices)


async def analyze_color(item: StillImage, api_key: Optional[str] = None) -> str:
    """
    Ask Gemini for a highly specific color/texture/pattern description of the item.
    Returns the model's text verbatim.
    """
    data = await _generate_content(
        model_name=config.get_text_model(),
        parts=[image_part(item), text_part(ANALYZE_PROMPT)],
        api_key=api_key,
        timeout=config.get_text_timeout(),
    )
    return _response_text(data)


async def style_image(
    collage: StillImage,
    description: str,
    refinement_feedback: str = "",
    api_key: Optional[str] = None,
) -> List[ResponsePart]:
    """
    Dress the model in the collage with the item. Returns the raw reply parts;
    the caller decides what a reply without an image means.
    """
    model_name = config.get_image_model()
    data = await _generate_content(
        model_name=model_name,
        parts=[image_part(collage), text_part(build_style_prompt(description, refinement_feedback))],
        api_key=api_key,
        timeout=config.get_image_timeout(),
        generation_config={"responseModalities": ["IMAGE", "TEXT"]},
    )

    block_reason = (data.get("promptFeedback") or {}).get("blockReason")
    if block_reason:
        raise GenerationError(f"Image generation was blocked. Reason: {block_reason}", GenerationError.BLOCKED)

    candidates = data.get("candidates") or []
    if not candidates:
        raise GenerationError(
            "Image generation failed: The model did not return any content.", GenerationError.EMPTY_RESPONSE
        )

    raw_parts = _candidate_parts(data)
    if not raw_parts:
        finish_reason = str((candidates[0] or {}).get("finishReason") or "").upper()
        if finish_reason in BLOCKING_FINISH_REASONS:
            raise GenerationError(
                f"Image generation was blocked. Finish reason: {finish_reason}", GenerationError.BLOCKED
            )
        raise GenerationError(
            "Image generation failed: The model returned a candidate with no content parts.",
            GenerationError.EMPTY_RESPONSE,
        )

    parts = parse_response_parts(raw_parts)
    logger.info(f"{model_name} returned {len(parts)} part(s), image={any(p.is_image for p in parts)}")
    return parts


async def judge_image(
    original_item: StillImage,
    generated_cropped: StillImage,
    description: str,
    api_key: Optional[str] = None,
) -> JudgeVerdict:
    data = await _generate_content(
        model_name=config.get_text_model(),
        parts=[
            text_part("Original Item:"),
            image_part(original_item),
            text_part("Generated Image:"),
            image_part(generated_cropped),
            text_part(JUDGE_PROMPT.format(description=description)),
        ],
        api_key=api_key,
        timeout=config.get_text_timeout(),
        generation_config={
            "responseMimeType": "application/json",
            "responseSchema": {
                "type": "OBJECT",
                "properties": {
                    "decision": {"type": "STRING", "description": 'Either "accept" or "refine".'},
                    "feedback": {"type": "STRING", "description": "Your detailed feedback."},
                },
                "required": ["decision", "feedback"],
            },
        },
    )
    text = _response_text(data)
    reply = parse_judge_reply(text)

    if isinstance(reply, UnparsableReply):
        logger.warning(f"Failed to parse judge's JSON response ({reply.reason}): {text[:500]}")
        return JudgeVerdict(
            decision="refine",
            feedback=(
                "The judge returned an invalid response. Assuming a refinement is needed. "
                f"Raw response: {reply.raw_text}"
            ),
        )

    decision = "accept" if reply.decision.strip().lower() == "accept" else "refine"
    return JudgeVerdict(decision=decision, feedback=reply.feedback)


async def filter_changed_images(
    original_model: StillImage,
    candidates: Sequence[StillImage],
    api_key: Optional[str] = None,
) -> List[StillImage]:
    """
    Keep only candidates whose clothing clearly differs from the original model photo.
    Order is preserved; an unreadable reply keeps nothing.
    """
    if not candidates:
        return []

    parts = [text_part("Original Image:"), image_part(original_model), text_part("\n\nCandidate Images:")]
    for index, candidate in enumerate(candidates):
        parts.append(text_part(f"\nCandidate {index}:"))
        parts.append(image_part(candidate))
    parts.append(text_part(FILTER_PROMPT))

    data = await _generate_content(
        model_name=config.get_text_model(),
        parts=parts,
        api_key=api_key,
        timeout=config.get_text_timeout(),
        generation_config={
            "responseMimeType": "application/json",
            "responseSchema": {
                "type": "OBJECT",
                "properties": {
                    "changed_indices": {
                        "type": "ARRAY",
                        "items": {"type": "NUMBER"},
                        "description": "An array of 0-based indices for candidate images with changed clothing.",
                    },
                },
                "required": ["changed_indices"],
            },
        },
    )
    text = _response_text(data)
    reply = parse_filter_reply(text)

    if isinstance(reply, UnparsableReply):
        logger.warning(f"Failed to parse filter JSON response ({reply.reason}): {text[:500]}")
        return []

    changed = set(reply.indices)
    kept = [candidate for index, candidate in enumerate(candidates) if index in changed]
    logger.info(f"Change filter kept {len(kept)}/{len(candidates)} candidate(s): {sorted(changed)}")
    return kept
