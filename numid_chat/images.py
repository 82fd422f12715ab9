from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from .conversation import DEFAULT_MIME_TYPE, InlineData, decode_inline_data, split_data_uri
from .errors import ContentShapeError, ConversationError

VISION_SYSTEM_PROMPT = "You are a concise, helpful AI. Use Markdown formatting."
SVG_SYSTEM_PROMPT = "You are a concise, helpful AI."
DEFAULT_VISION_PROMPT = "Describe this image in detail."

SVG_PROMPT_TEMPLATE = (
    "Create a valid, standalone SVG image that matches this request. "
    "Return ONLY raw SVG markup, no backticks, no explanations. "
    'Keep size responsive using width="100%" and viewBox. Prompt: {prompt}'
)

_OPENING_FENCE = re.compile(r"^```(?:xml|svg)?", re.IGNORECASE)
_CLOSING_FENCE = re.compile(r"```$")


def build_vision_parts(data_uri: Optional[str], mime_type: Optional[str], prompt: Optional[str]) -> List[Dict[str, Any]]:
    """Prompt text followed by the image as inline data."""
    if not data_uri:
        raise ConversationError("missing image data")
    data = split_data_uri(data_uri)
    decode_inline_data(data)
    inline = InlineData(data=data, mime_type=mime_type or DEFAULT_MIME_TYPE)
    return [{"text": prompt or DEFAULT_VISION_PROMPT}, inline.to_part()]


def build_svg_prompt(prompt: Optional[str]) -> str:
    if not prompt or not prompt.strip():
        raise ConversationError("prompt is required")
    return SVG_PROMPT_TEMPLATE.format(prompt=prompt)


def extract_svg(text: str) -> str:
    """Purpose: Pull raw SVG markup out of a model reply.
    Inputs/Outputs: Input is the generated text; output is markup starting with `<svg`.
    Failure Modes: ContentShapeError when nothing SVG-shaped remains after
        stripping Markdown code fences.
    """
    svg = (text or "").strip()
    svg = _OPENING_FENCE.sub("", svg)
    svg = _CLOSING_FENCE.sub("", svg).strip()
    if not svg.startswith("<svg"):
        raise ContentShapeError("model did not return SVG")
    return svg
