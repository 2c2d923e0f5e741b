"""
MOONDREAM TOOLS MODULE
======================

Gateway between the chat orchestration and the Moondream vision API. Four
operations, each exposed to the LLM as its own tool:

  moondreamQuery   - free-form visual question answering
  moondreamDetect  - bounding boxes for an object label
  moondreamPoint   - center points for an object label
  moondreamCaption - natural language caption (short / normal / long)

CONTRACT:
  - One POST per call to {MOONDREAM_API_BASE}/<operation>, credential in the
    X-Moondream-Auth header, hard deadline of MOONDREAM_TIMEOUT_SECONDS.
  - No retries. A failed or timed-out call is reported once.
  - Nothing raises across the tool boundary: every failure comes back as
    {"error": "..."} so the model can narrate it to the user.
  - Provider snake_case fields are re-keyed to the camelCase result shape.
    Coordinates are normalized fractions in [0, 1] and pass through unchanged.

The caption `stream` flag is forwarded to the API, but the response is always
read as a single JSON body; incremental caption delivery is not supported.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional, Union

import requests
from langchain_core.tools import BaseTool, tool
from pydantic import BaseModel, Field

from config import MOONDREAM_API_BASE, MOONDREAM_TIMEOUT_SECONDS


logger = logging.getLogger("PocketSenpai")

IMAGE_URL_DESCRIPTION = (
    "The image URL or base64 encoded image data URL (data:image/jpeg;base64,...). "
    "Use the same image reference the user attached in the conversation."
)


# ==============================================================================
# SHARED REQUEST PRIMITIVE
# ==============================================================================

@dataclass(frozen=True)
class RequestOk:
    data: Any
    ok: bool = True


@dataclass(frozen=True)
class RequestFailed:
    error: str
    ok: bool = False


MoondreamRequestResult = Union[RequestOk, RequestFailed]

# Body is read in small pieces so the wall-clock deadline is checked while
# bytes are still arriving; a slow trickle cannot outlive it.
READ_CHUNK_BYTES = 1


class DeadlineExceeded(requests.exceptions.Timeout):
    """The call as a whole ran past its deadline."""


def _read_body(response: requests.Response, deadline: float) -> bytes:
    body = bytearray()
    try:
        for chunk in response.iter_content(chunk_size=READ_CHUNK_BYTES):
            if time.monotonic() > deadline:
                raise DeadlineExceeded("response body still arriving at the deadline")
            body.extend(chunk)
    except requests.exceptions.ConnectionError as e:
        # requests reports a stalled body read as a ConnectionError.
        if time.monotonic() > deadline:
            raise DeadlineExceeded(str(e)) from e
        raise
    if time.monotonic() > deadline:
        raise DeadlineExceeded("response completed after the deadline")
    return bytes(body)


def perform_moondream_request(
    endpoint: str,
    payload: Dict[str, Any],
    api_key: str,
    label: str,
    timeout: float = MOONDREAM_TIMEOUT_SECONDS,
    base_url: str = MOONDREAM_API_BASE,
) -> MoondreamRequestResult:
    """
    POST payload to one Moondream endpoint and return RequestOk or RequestFailed.

    `timeout` is a total deadline for the whole call, headers and body
    included. When it expires the connection is closed and the call reported
    as timed out.

    Upstream rejections keep the provider's body text verbatim so it can be
    diagnosed from the tool output. Transport errors, deadline expiry and
    unparseable bodies are all reported as "<label> failed: <message>".
    """
    url = f"{base_url}/{endpoint}"
    start = time.monotonic()
    deadline = start + timeout
    logger.info(
        "[%s] POST %s (payload %d bytes, keys=%s)",
        label,
        url,
        len(json.dumps(payload)),
        sorted(payload.keys()),
    )

    response = None
    try:
        response = requests.post(
            url,
            json=payload,
            headers={
                "Content-Type": "application/json",
                "X-Moondream-Auth": api_key,
            },
            timeout=timeout,
            stream=True,
        )
        body = _read_body(response, deadline)
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info("[%s] Response %s in %.0fms", label, response.status_code, elapsed_ms)

        text = body.decode(response.encoding or "utf-8", errors="replace")
        if not response.ok:
            logger.error("[%s] API error %s: %s", label, response.status_code, text)
            return RequestFailed(
                error=f"Moondream API error ({response.status_code}): {text}"
            )

        data = json.loads(text)
    except requests.exceptions.Timeout as e:
        logger.error("[%s] Request timed out after %gs: %s", label, timeout, e)
        return RequestFailed(error=f"{label} failed: request timed out after {timeout:g}s")
    except (requests.exceptions.RequestException, ValueError) as e:
        # ValueError covers JSON decoding failures on a 2xx response.
        logger.error("[%s] Request failed: %s", label, e)
        return RequestFailed(error=f"{label} failed: {e}")
    finally:
        if response is not None:
            response.close()

    logger.info("[%s] Completed in %.0fms", label, (time.monotonic() - start) * 1000)
    return RequestOk(data=data)


def _missing(**fields: Optional[str]) -> Optional[Dict[str, str]]:
    """Return an {error} result naming the first blank required field, else None."""
    for name, value in fields.items():
        if not isinstance(value, str) or not value.strip():
            return {"error": f"'{name}' is required and must be a non-empty string"}
    return None


# ==============================================================================
# OPERATIONS
# ==============================================================================

def moondream_query(imageUrl: str, question: str, *, api_key: str) -> Dict[str, Any]:
    invalid = _missing(imageUrl=imageUrl, question=question)
    if invalid:
        return invalid

    result = perform_moondream_request(
        "query",
        {"image_url": imageUrl, "question": question},
        api_key,
        "Moondream Query",
    )
    if not result.ok:
        return {"error": result.error}

    try:
        return {
            "answer": result.data["answer"],
            "requestId": result.data.get("request_id", ""),
        }
    except (KeyError, TypeError, AttributeError) as e:
        return {"error": f"Moondream Query failed: malformed response ({e})"}


def moondream_detect(imageUrl: str, object: str, *, api_key: str) -> Dict[str, Any]:
    invalid = _missing(imageUrl=imageUrl, object=object)
    if invalid:
        return invalid

    result = perform_moondream_request(
        "detect",
        {"image_url": imageUrl, "object": object},
        api_key,
        "Moondream Detect",
    )
    if not result.ok:
        return {"error": result.error}

    try:
        objects = [
            {
                "xMin": obj["x_min"],
                "yMin": obj["y_min"],
                "xMax": obj["x_max"],
                "yMax": obj["y_max"],
            }
            for obj in result.data.get("objects", [])
        ]
    except (KeyError, TypeError, AttributeError) as e:
        return {"error": f"Moondream Detect failed: malformed response ({e})"}

    logger.info("[Moondream Detect] %d '%s' found", len(objects), object)
    return {
        "imageUrl": imageUrl,
        "object": object,
        "objects": objects,
        "requestId": result.data.get("request_id", ""),
        "count": len(objects),
        "visualizationType": "bounding-boxes",
    }


def moondream_point(imageUrl: str, object: str, *, api_key: str) -> Dict[str, Any]:
    invalid = _missing(imageUrl=imageUrl, object=object)
    if invalid:
        return invalid

    result = perform_moondream_request(
        "point",
        {"image_url": imageUrl, "object": object},
        api_key,
        "Moondream Point",
    )
    if not result.ok:
        return {"error": result.error}

    try:
        points = [{"x": p["x"], "y": p["y"]} for p in result.data.get("points", [])]
    except (KeyError, TypeError, AttributeError) as e:
        return {"error": f"Moondream Point failed: malformed response ({e})"}

    logger.info("[Moondream Point] %d '%s' found", len(points), object)
    return {
        "imageUrl": imageUrl,
        "object": object,
        "points": points,
        "requestId": result.data.get("request_id", ""),
        "count": len(points),
        "visualizationType": "points",
    }


CaptionLength = Literal["short", "normal", "long"]
CAPTION_LENGTHS = ("short", "normal", "long")


def moondream_caption(
    imageUrl: str,
    length: Optional[str] = "normal",
    stream: Optional[bool] = False,
    *,
    api_key: str,
) -> Dict[str, Any]:
    invalid = _missing(imageUrl=imageUrl)
    if invalid:
        return invalid
    length = length or "normal"
    if length not in CAPTION_LENGTHS:
        return {"error": f"'length' must be one of {', '.join(CAPTION_LENGTHS)}"}

    result = perform_moondream_request(
        "caption",
        {"image_url": imageUrl, "length": length, "stream": bool(stream)},
        api_key,
        "Moondream Caption",
    )
    if not result.ok:
        return {"error": result.error}

    try:
        data = result.data
        output: Dict[str, Any] = {
            "caption": data["caption"],
            "finishReason": data.get("finish_reason", ""),
        }
        metrics = data.get("metrics")
        if metrics:
            output["metrics"] = {
                "inputTokens": metrics.get("input_tokens", 0),
                "outputTokens": metrics.get("output_tokens", 0),
                "prefillTimeMs": metrics.get("prefill_time_ms", 0),
                "decodeTimeMs": metrics.get("decode_time_ms", 0),
                "ttftMs": metrics.get("ttft_ms", 0),
            }
    except (KeyError, TypeError, AttributeError) as e:
        return {"error": f"Moondream Caption failed: malformed response ({e})"}
    return output


# ==============================================================================
# TOOL INPUT SCHEMAS
# ==============================================================================

class QueryInput(BaseModel):
    imageUrl: str = Field(..., min_length=1, description=IMAGE_URL_DESCRIPTION)
    question: str = Field(..., min_length=1, description="The natural language question to ask about the image")


class DetectInput(BaseModel):
    imageUrl: str = Field(..., min_length=1, description=IMAGE_URL_DESCRIPTION)
    object: str = Field(
        ...,
        min_length=1,
        description='The object to detect in the image (e.g. "person", "car", "face", "dog").',
    )


class PointInput(BaseModel):
    imageUrl: str = Field(..., min_length=1, description=IMAGE_URL_DESCRIPTION)
    object: str = Field(
        ...,
        min_length=1,
        description='The object to point to in the image (e.g. "face", "building", "logo").',
    )


class CaptionInput(BaseModel):
    imageUrl: str = Field(..., min_length=1, description=IMAGE_URL_DESCRIPTION)
    length: Optional[CaptionLength] = Field(
        default="normal", description="The desired length of the caption (default: normal)"
    )
    stream: Optional[bool] = Field(default=False, description="Whether to stream the caption (default: false)")


# ==============================================================================
# TOOL FACTORY
# ==============================================================================

def moondream_tools(api_key: str) -> Dict[str, BaseTool]:
    """
    Build the four Moondream tools bound to one API key.

    Returns a name -> tool mapping; the tools hold no state besides the key,
    so a fresh set can be built per request.
    """
    logger.info("Moondream tools initialized (API key %s)", "present" if api_key else "missing")

    @tool("moondreamQuery", args_schema=QueryInput)
    def query_tool(imageUrl: str, question: str) -> Dict[str, Any]:
        """Answer natural language questions about images using visual question answering. Use this to understand what is in an image or answer specific questions about image content."""
        return moondream_query(imageUrl, question, api_key=api_key)

    @tool("moondreamDetect", args_schema=DetectInput)
    def detect_tool(imageUrl: str, object: str) -> Dict[str, Any]:
        """Detect and locate objects in an image with bounding boxes. Returns normalized coordinates (0-1) for object locations and creates a visual overlay showing detected objects. Use this when the user wants to see WHERE objects are located."""
        return moondream_detect(imageUrl, object, api_key=api_key)

    @tool("moondreamPoint", args_schema=PointInput)
    def point_tool(imageUrl: str, object: str) -> Dict[str, Any]:
        """Get precise center point coordinates for objects in an image. Returns normalized coordinates (0-1) for the center of each detected object and creates a visual overlay with point markers. Use this when the user wants POINT locations marked on the image."""
        return moondream_point(imageUrl, object, api_key=api_key)

    @tool("moondreamCaption", args_schema=CaptionInput)
    def caption_tool(imageUrl: str, length: Optional[str] = "normal", stream: Optional[bool] = False) -> Dict[str, Any]:
        """Generate detailed natural language descriptions of images. Use this for specialized captions or when a highly detailed description is wanted."""
        return moondream_caption(imageUrl, length, stream, api_key=api_key)

    tools = [query_tool, detect_tool, point_tool, caption_tool]
    return {t.name: t for t in tools}
