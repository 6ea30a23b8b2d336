"""Parse GUI-model replies into structured actions.

A reply has an optional reasoning header followed by one or more action
calls separated by blank lines, for example::

    Thought: The search box is at the top.
    Action: click(start_box='(279,81)')

Two reply dialects exist. ``bc`` uses ``Thought:`` or ``Reflection:`` +
``Action_Summary:`` headers. ``o1`` wraps the thought in ``<Thought>`` tags
and the summary is appended to the thought, markers included.

Positions arrive in model-native units (``factor`` per axis) and are
normalized to fractions of the screenshot, serialized as JSON arrays
(``"[0.279,0.081,0.279,0.081]"``). ``parse`` never raises: anything it
cannot read becomes an action with an empty type and no inputs.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Sequence

from agentkernel.gui.constants import (
    DEFAULT_FACTORS,
    IMAGE_FACTOR,
    MAX_PIXELS_V1_5,
    MAX_RATIO,
    MIN_PIXELS,
    MODEL_VERSION_1_0,
    MODEL_VERSION_1_5,
)

logger = logging.getLogger(__name__)


@dataclass
class ScreenContext:
    width: int
    height: int


@dataclass
class PredictionParsed:
    thought: str = ""
    reflection: str | None = None
    action_type: str = ""
    action_inputs: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


# ── Number helpers ──────────────────────────────────────────────


def js_round(value: float) -> int:
    """Round half up, the way JavaScript's Math.round does."""
    return math.floor(value + 0.5)


def format_number(value: float) -> str:
    """Shortest JSON rendering: integers without ``.0``, no exponent in [1e-6, 1e21)."""
    if math.isnan(value) or math.isinf(value):
        return "null"
    if value == int(value) and abs(value) < 1e21:
        return str(int(value))
    text = repr(value)
    if "e" in text:
        if 1e-6 <= abs(value) < 1e21:
            text = format(Decimal(text), "f")
        else:
            mantissa, exponent = text.split("e")
            text = f"{mantissa}e{int(exponent):+d}"
    return text


def format_box(numbers: Sequence[float]) -> str:
    return "[" + ",".join(format_number(n) for n in numbers) + "]"


_FLOAT_PREFIX_RE = re.compile(r"\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")


def _parse_float(text: str) -> float:
    match = _FLOAT_PREFIX_RE.match(text)
    return float(match.group(1)) if match else math.nan


# ── v1.5 image sizing ───────────────────────────────────────────


def smart_resize(
    height: int,
    width: int,
    max_ratio: float = MAX_RATIO,
    factor: int = IMAGE_FACTOR,
    min_pixels: int = MIN_PIXELS,
    max_pixels: int = MAX_PIXELS_V1_5,
) -> tuple[int, int] | None:
    """Return (width, height) of the image the v1.5 model actually saw."""
    if min(height, width) <= 0:
        return None
    if max(height, width) / min(height, width) > max_ratio:
        logger.error(
            "absolute aspect ratio must be smaller than %s, got %s",
            max_ratio,
            max(height, width) / min(height, width),
        )
        return None

    w_bar = max(factor, js_round(width / factor) * factor)
    h_bar = max(factor, js_round(height / factor) * factor)

    if h_bar * w_bar > max_pixels:
        beta = math.sqrt((height * width) / max_pixels)
        h_bar = math.floor(height / beta / factor) * factor
        w_bar = math.floor(width / beta / factor) * factor
    elif h_bar * w_bar < min_pixels:
        beta = math.sqrt(min_pixels / (height * width))
        h_bar = math.ceil(height * beta / factor) * factor
        w_bar = math.ceil(width * beta / factor) * factor

    return w_bar, h_bar


# ── Single action call ──────────────────────────────────────────

_CALL_RE = re.compile(r"(\w+)\((.*)\)", re.DOTALL)
# Commas inside quoted values do not split arguments
_ARG_RE = re.compile(r"""(?:[^,'"]|'[^']*'|"[^"]*")+""")
_SURROUNDING_QUOTE_RE = re.compile(r"""^['"]|['"]$""")
_TAG_RE = {
    "bbox": re.compile(r"<bbox>|</bbox>"),
    "point": re.compile(r"<point>|</point>"),
}


def parse_action(action_str: str) -> tuple[str, dict[str, str]] | None:
    """Split ``name(key='value', ...)`` into the name and a raw argument map."""
    action_str = re.sub(r"<\|box_start\|>|<\|box_end\|>", "", action_str)
    action_str = action_str.replace("point=", "start_box=")

    match = _CALL_RE.fullmatch(action_str.strip())
    if not match:
        logger.debug("not a function call: %r", action_str)
        return None

    name, args_str = match.groups()
    kwargs: dict[str, str] = {}
    if args_str.strip():
        for pair in _ARG_RE.finditer(args_str):
            key, _, value = pair.group(0).partition("=")
            key = key.strip()
            if not key:
                continue
            value = _SURROUNDING_QUOTE_RE.sub("", value.strip())

            for tag, tag_re in _TAG_RE.items():
                if f"<{tag}>" in value:
                    value = "(" + re.sub(r"\s+", ",", tag_re.sub("", value)) + ")"

            kwargs[key] = value
    return name, kwargs


def _normalize_box(
    raw: str,
    factors: tuple[float, float],
) -> list[float]:
    numbers = [n for n in re.sub(r"[()\[\]]", "", raw).split(",") if n != ""]
    values = [_parse_float(n) / factors[idx % 2] for idx, n in enumerate(numbers)]
    if len(values) == 2:
        values.extend(values[:2])
    return values


def _box_center(
    box: list[float],
    screen: ScreenContext,
    factors: tuple[float, float],
    scale_factor: float,
) -> list[float]:
    if not box or any(math.isnan(v) for v in box):
        return []
    x1, y1 = box[0], box[1] if len(box) > 1 else box[0]
    x2 = box[2] if len(box) > 2 else x1
    y2 = box[3] if len(box) > 3 else y1
    width_factor, height_factor = factors
    return [
        js_round(((x1 + x2) / 2) * screen.width * width_factor) / width_factor * scale_factor,
        js_round(((y1 + y2) / 2) * screen.height * height_factor) / height_factor * scale_factor,
    ]


# ── Reply headers ───────────────────────────────────────────────

_BC_THOUGHT_RE = re.compile(r"Thought: ([\s\S]+?)(?=\s*Action:|$)")
_BC_REFLECTION_RE = re.compile(r"Reflection: ([\s\S]+?)Action_Summary: ([\s\S]+?)(?=\s*Action:|$)")
_BC_SUMMARY_RE = re.compile(r"Action_Summary: (.+?)(?=\s*Action:|$)")

_O1_THOUGHT_RE = re.compile(r"<Thought>\s*(.*?)\s*</Thought>")
_O1_SUMMARY_RE = re.compile(r"\nAction_Summary:\s*(.*?)\s*Action:")
_O1_ACTION_RE = re.compile(r"\nAction:\s*(.*?)\s*</Output>")


def _split_bc(text: str) -> tuple[str | None, str | None, str]:
    """Split a bc reply into (thought, reflection, action text).

    Only the text after the last ``Action:`` is kept, so in
    ``"Action: a()\\n\\nAction: b()"`` the ``a()`` clause is dropped.
    """
    thought = reflection = None
    if "Thought:" in text:
        match = _BC_THOUGHT_RE.search(text)
        if match:
            thought = match.group(1).strip()
    elif text.startswith("Reflection:"):
        match = _BC_REFLECTION_RE.search(text)
        if match:
            reflection = match.group(1).strip()
            thought = match.group(2).strip()
    elif text.startswith("Action_Summary:"):
        match = _BC_SUMMARY_RE.search(text)
        if match:
            thought = match.group(1).strip()

    if "Action:" not in text:
        action_str = text
    else:
        action_str = text.split("Action:")[-1]
    return thought, reflection, action_str


def _split_o1(text: str) -> tuple[str | None, str | None, str]:
    thought = _O1_THOUGHT_RE.search(text)
    summary = _O1_SUMMARY_RE.search(text)
    action = _O1_ACTION_RE.search(text)
    combined = (
        f"{thought.group(1) if thought else ''}\n<Action_Summary>\n"
        f"{summary.group(1) if summary else ''}"
    )
    return combined, None, action.group(1) if action else ""


# ── Entry point ─────────────────────────────────────────────────


def parse(
    raw_text: str,
    factor: float | Sequence[float] = DEFAULT_FACTORS,
    dialect: str = "bc",
    screen_context: ScreenContext | None = None,
    scale_factor: float | None = None,
    model_version: str = MODEL_VERSION_1_0,
) -> list[PredictionParsed]:
    """Parse one model reply into the actions it requests."""
    if isinstance(factor, (int, float)):
        factors = (factor, factor)
    else:
        factors = (factor[0], factor[1])

    box_factors = factors
    if (
        model_version == MODEL_VERSION_1_5
        and screen_context is not None
        and screen_context.width
        and screen_context.height
    ):
        resized = smart_resize(screen_context.height, screen_context.width)
        if resized is not None:
            box_factors = resized

    text = (raw_text or "").strip()
    if dialect == "o1":
        thought, reflection, action_str = _split_o1(text)
    else:
        thought, reflection, action_str = _split_bc(text)

    actions: list[PredictionParsed] = []
    for raw_action in action_str.split("\n\n"):
        parsed = parse_action(raw_action.replace("\n", "\\n").lstrip())
        action_type = ""
        inputs: dict[str, Any] = {}

        if parsed is not None:
            action_type, params = parsed
            for name, value in params.items():
                if not value:
                    continue
                value = value.strip()
                if "start_box" in name or "end_box" in name:
                    box = _normalize_box(value, box_factors)
                    inputs[name] = format_box(box)
                    if screen_context and screen_context.width and screen_context.height:
                        coords_key = "start_coords" if "start_box" in name else "end_coords"
                        inputs[coords_key] = _box_center(
                            box,
                            screen_context,
                            factors,
                            scale_factor if scale_factor is not None else 1,
                        )
                else:
                    inputs[name] = value

        actions.append(
            PredictionParsed(
                thought=thought or "",
                reflection=reflection,
                action_type=action_type,
                action_inputs=inputs,
            )
        )
    return actions
