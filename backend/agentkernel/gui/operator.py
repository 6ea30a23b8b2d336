"""Operator bridge: turns parsed GUI actions into actuator calls.

``Operator`` is the contract the GUI loop depends on: take a screenshot,
execute one parsed prediction. ``ActionOperator`` implements the standard
action vocabulary on top of a handful of primitives (move, click, type,
keys, scroll) that a concrete actuator provides.

Boxes are fractions of the screenshot. They are mapped to pixels with the
*physical* screenshot size, since actuators work in physical pixels.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Sequence

from agentkernel.gui.action_parser import PredictionParsed, js_round
from agentkernel.gui.constants import (
    ACTION_CALL_USER,
    ACTION_ERROR_ENV,
    ACTION_FINISHED,
    ACTION_SPACES,
    ACTION_USER_STOP,
    DEFAULT_FACTORS,
    SCROLL_AMOUNT,
    WAIT_ACTION_SECONDS,
)

logger = logging.getLogger(__name__)


class GUIStatus(str, enum.Enum):
    INIT = "init"
    RUNNING = "running"
    PAUSE = "pause"
    END = "end"
    CALL_USER = "call_user"
    USER_STOPPED = "user_stopped"
    ERROR = "error"


@dataclass
class ScreenshotOutput:
    image_base64: str
    physical_width: int
    physical_height: int
    scale_factor: float = 1.0
    mime: str = "image/png"

    @property
    def is_valid(self) -> bool:
        return bool(self.image_base64) and self.physical_width > 0 and self.physical_height > 0

    def data_url(self) -> str:
        if self.image_base64.startswith("data:"):
            return self.image_base64
        return f"data:{self.mime};base64,{self.image_base64}"


@dataclass
class ExecuteOutput:
    status: GUIStatus | None = None


def parse_box_to_screen_coords(
    box_str: str | None,
    screen_width: float,
    screen_height: float,
    factors: Sequence[float] = DEFAULT_FACTORS,
) -> tuple[float | None, float | None]:
    """Centre of a fractional box in screen pixels.

    ``'[0.131,0.25,0.131,0.25]'`` on 2560x1440 gives ``(335.36, 360.0)``.
    """
    if not box_str:
        return None, None
    try:
        coords = [float(n.strip()) for n in box_str.replace("[", "").replace("]", "").split(",")]
    except ValueError:
        logger.warning("cannot read box %r", box_str)
        return None, None

    x1 = coords[0]
    y1 = coords[1] if len(coords) > 1 else x1
    x2 = coords[2] if len(coords) > 2 else x1
    y2 = coords[3] if len(coords) > 3 else y1
    width_factor, height_factor = factors[0], factors[1]

    return (
        js_round((x1 + x2) / 2 * screen_width * width_factor) / width_factor,
        js_round((y1 + y2) / 2 * screen_height * height_factor) / height_factor,
    )


class Operator(ABC):
    ACTION_SPACES: list[str] = ACTION_SPACES

    @abstractmethod
    async def screenshot(self) -> ScreenshotOutput:
        ...

    @abstractmethod
    async def execute(
        self, prediction: PredictionParsed, screen: ScreenshotOutput
    ) -> ExecuteOutput | None:
        ...


# ── Key names ───────────────────────────────────────────────────

_PLATFORM_COMMAND = "cmd" if sys.platform == "darwin" else "win"
_PLATFORM_CTRL = "cmd" if sys.platform == "darwin" else "ctrl"

KEY_MAP = {
    "return": "enter",
    "enter": "enter",
    "backspace": "backspace",
    "delete": "delete",
    "ctrl": _PLATFORM_CTRL,
    "shift": "shift",
    "alt": "alt",
    "space": "space",
    "page down": "pagedown",
    "pagedown": "pagedown",
    "page up": "pageup",
    "pageup": "pageup",
    "meta": _PLATFORM_COMMAND,
    "win": _PLATFORM_COMMAND,
    "command": _PLATFORM_COMMAND,
    "cmd": _PLATFORM_COMMAND,
    "comma": ",",
    ",": ",",
    "up": "up",
    "down": "down",
    "left": "left",
    "right": "right",
    "arrowup": "up",
    "arrowdown": "down",
    "arrowleft": "left",
    "arrowright": "right",
}


def parse_hotkey(key_str: str | None) -> list[str]:
    """``"ctrl+shift a"`` -> ``["ctrl", "shift", "a"]`` using canonical key names."""
    if not key_str:
        return []
    parts = [p for p in key_str.replace("+", " ").split(" ") if p]
    return [KEY_MAP.get(p.lower(), p.lower()) for p in parts]


class ActionOperator(Operator):
    """Standard action vocabulary over overridable primitives.

    ``HANDLERS`` maps action types to method names. A subclass changes the
    behavior of one action by overriding its method or remapping its entry;
    every other action keeps the base mapping.
    """

    HANDLERS: dict[str, str] = {
        "wait": "do_wait",
        "mouse_move": "do_move",
        "hover": "do_move",
        "click": "do_left_click",
        "left_click": "do_left_click",
        "left_single": "do_left_click",
        "left_double": "do_double_click",
        "double_click": "do_double_click",
        "right_click": "do_right_click",
        "right_single": "do_right_click",
        "middle_click": "do_middle_click",
        "left_click_drag": "do_drag",
        "drag": "do_drag",
        "select": "do_drag",
        "type": "do_type",
        "hotkey": "do_hotkey",
        "press": "do_press",
        "release": "do_release",
        "scroll": "do_scroll",
    }
    TERMINAL_ACTIONS = {ACTION_ERROR_ENV, ACTION_CALL_USER, ACTION_FINISHED, ACTION_USER_STOP}

    # ------------------------------------------------------------------
    # Primitives, provided by the concrete actuator
    # ------------------------------------------------------------------

    @abstractmethod
    async def move_to(self, x: float, y: float) -> None:
        ...

    @abstractmethod
    async def click(self, button: str = "left", count: int = 1) -> None:
        ...

    @abstractmethod
    async def drag_to(self, x: float, y: float) -> None:
        ...

    @abstractmethod
    async def type_text(self, text: str) -> None:
        ...

    @abstractmethod
    async def press_keys(self, keys: list[str]) -> None:
        ...

    @abstractmethod
    async def release_keys(self, keys: list[str]) -> None:
        ...

    @abstractmethod
    async def scroll(self, direction: str, amount: int) -> None:
        ...

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def execute(
        self, prediction: PredictionParsed, screen: ScreenshotOutput
    ) -> ExecuteOutput | None:
        action_type = prediction.action_type
        inputs = prediction.action_inputs or {}

        if action_type in self.TERMINAL_ACTIONS:
            return ExecuteOutput(status=GUIStatus.END)

        handler_name = self.HANDLERS.get(action_type)
        if handler_name is None:
            logger.warning("Unsupported action: %s", action_type)
            return None

        x, y = parse_box_to_screen_coords(
            inputs.get("start_box"), screen.physical_width, screen.physical_height
        )
        logger.info("%s at (%s, %s)", action_type, x, y)
        await getattr(self, handler_name)(inputs, x, y, screen)
        return None

    # ------------------------------------------------------------------
    # Base mapping
    # ------------------------------------------------------------------

    async def _move_if_known(self, x: float | None, y: float | None) -> None:
        if x is not None and y is not None:
            await self.move_to(x, y)

    async def do_wait(self, inputs, x, y, screen) -> None:
        await self.sleep(WAIT_ACTION_SECONDS)

    async def do_move(self, inputs, x, y, screen) -> None:
        await self._move_if_known(x, y)

    async def do_left_click(self, inputs, x, y, screen) -> None:
        await self._move_if_known(x, y)
        await self.sleep(0.1)
        await self.click("left")

    async def do_double_click(self, inputs, x, y, screen) -> None:
        await self._move_if_known(x, y)
        await self.sleep(0.1)
        await self.click("left", count=2)

    async def do_right_click(self, inputs, x, y, screen) -> None:
        await self._move_if_known(x, y)
        await self.sleep(0.1)
        await self.click("right")

    async def do_middle_click(self, inputs, x, y, screen) -> None:
        await self._move_if_known(x, y)
        await self.click("middle")

    async def do_drag(self, inputs, x, y, screen) -> None:
        end_x, end_y = parse_box_to_screen_coords(
            inputs.get("end_box"), screen.physical_width, screen.physical_height
        )
        if None in (x, y, end_x, end_y):
            logger.warning("drag needs both start_box and end_box: %s", inputs)
            return
        await self.move_to(x, y)
        await self.drag_to(end_x, end_y)

    @staticmethod
    def _strip_submit(content: str) -> tuple[str, bool]:
        """Remove a trailing newline marker; report whether one was present."""
        submit = content.endswith("\n") or content.endswith("\\n")
        if content.endswith("\\n"):
            content = content[:-2]
        elif content.endswith("\n"):
            content = content[:-1]
        return content, submit

    async def do_type(self, inputs, x, y, screen) -> None:
        content = (inputs.get("content") or "").strip()
        if not content:
            return
        text, submit = self._strip_submit(content)
        await self.type_text(text)
        if submit:
            await self.press_keys(["enter"])
            await self.release_keys(["enter"])

    async def do_hotkey(self, inputs, x, y, screen) -> None:
        keys = parse_hotkey(inputs.get("key") or inputs.get("hotkey"))
        if keys:
            await self.press_keys(keys)
            await self.release_keys(keys)

    async def do_press(self, inputs, x, y, screen) -> None:
        keys = parse_hotkey(inputs.get("key") or inputs.get("hotkey"))
        if keys:
            await self.press_keys(keys)

    async def do_release(self, inputs, x, y, screen) -> None:
        keys = parse_hotkey(inputs.get("key") or inputs.get("hotkey"))
        if keys:
            await self.release_keys(keys)

    async def do_scroll(self, inputs, x, y, screen) -> None:
        await self._move_if_known(x, y)
        direction = (inputs.get("direction") or "").lower()
        if direction in ("up", "down"):
            await self.scroll(direction, SCROLL_AMOUNT)
        else:
            logger.warning("Unsupported scroll direction: %s", direction)


class ClipboardTypingMixin(ABC):
    """Type by pasting from the clipboard, restoring it afterwards.

    Used on platforms where synthesized keystrokes lose characters.
    """

    @abstractmethod
    async def get_clipboard(self) -> str:
        ...

    @abstractmethod
    async def set_clipboard(self, text: str) -> None:
        ...

    async def do_type(self, inputs, x, y, screen) -> None:
        content = (inputs.get("content") or "").strip()
        if not content:
            return
        text, submit = ActionOperator._strip_submit(content)
        original = await self.get_clipboard()
        await self.set_clipboard(text)
        await self.press_keys(["ctrl", "v"])
        await self.sleep(0.05)
        await self.release_keys(["ctrl", "v"])
        await self.sleep(0.05)
        await self.set_clipboard(original)
        if submit:
            await self.press_keys(["enter"])
            await self.release_keys(["enter"])
