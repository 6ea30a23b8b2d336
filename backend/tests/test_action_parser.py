"""Tests for the GUI action parser (bc and o1 reply dialects)."""

from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest

from agentkernel.gui.action_parser import (
    ScreenContext,
    format_number,
    js_round,
    parse,
    parse_action,
    smart_resize,
)


# ── 1. Number helpers ───────────────────────────────────────────


def test_js_round_rounds_half_up():
    assert js_round(2.5) == 3
    assert js_round(-2.5) == -2
    assert js_round(0.49) == 0
    print("  PASS: js_round")


def test_format_number_matches_json_rendering():
    assert format_number(1.0) == "1"
    assert format_number(0.279) == "0.279"
    assert format_number(1e-7) == "1e-7"
    assert format_number(float("nan")) == "null"
    print("  PASS: format_number")


def test_smart_resize():
    assert smart_resize(1080, 1920) == (1932, 1092)
    assert smart_resize(10, 5000) is None
    assert smart_resize(0, 100) is None
    print("  PASS: smart_resize")


# ── 2. Single action calls ──────────────────────────────────────


def test_parse_action_quotes_and_commas():
    assert parse_action("click(start_box='(279,81)')") == ("click", {"start_box": "(279,81)"})
    assert parse_action('click(start_box="(1,2)")') == ("click", {"start_box": "(1,2)"})
    assert parse_action("type(content='a, b')") == ("type", {"content": "a, b"})
    assert parse_action("finished()") == ("finished", {})
    assert parse_action("not a call") is None
    print("  PASS: parse_action")


def test_parse_action_tags_and_box_tokens():
    assert parse_action("click(start_box='<bbox>100 200 300 400</bbox>')") == (
        "click",
        {"start_box": "(100,200,300,400)"},
    )
    assert parse_action("click(point='<point>500 300</point>')") == (
        "click",
        {"start_box": "(500,300)"},
    )
    assert parse_action("click(start_box='<|box_start|>(279,81)<|box_end|>')") == (
        "click",
        {"start_box": "(279,81)"},
    )
    print("  PASS: tags and box tokens")


# ── 3. bc dialect ───────────────────────────────────────────────


def test_bc_thought_and_click():
    actions = parse("Thought: The search box is at the top.\nAction: click(start_box='(279,81)')")
    assert len(actions) == 1
    action = actions[0]
    assert action.thought == "The search box is at the top."
    assert action.reflection is None
    assert action.action_type == "click"
    assert action.action_inputs == {"start_box": "[0.279,0.081,0.279,0.081]"}
    print("  PASS: bc click")


def test_bc_reflection_and_summary():
    text = (
        "Reflection: I clicked the wrong tab.\n"
        "Action_Summary: Click the Settings tab.\n"
        "Action: click(start_box='<bbox>100 200 300 400</bbox>')"
    )
    action = parse(text)[0]
    assert action.reflection == "I clicked the wrong tab."
    assert action.thought == "Click the Settings tab."
    assert action.action_inputs["start_box"] == "[0.1,0.2,0.3,0.4]"
    print("  PASS: bc reflection")


def test_bc_multiple_actions_and_newlines():
    text = "Thought: fill the form\nAction: click(start_box='(500,300)')\n\ntype(content='hello\nworld')"
    actions = parse(text)
    assert [a.action_type for a in actions] == ["click", "type"]
    assert actions[1].action_inputs == {"content": "hello\\nworld"}
    assert all(a.thought == "fill the form" for a in actions)
    print("  PASS: bc multiple actions")


def test_bc_repeated_action_keyword_keeps_last_clause():
    actions = parse("Action: click(start_box='(1,1)')\n\nAction: finished()")
    assert [a.action_type for a in actions] == ["finished"]
    print("  PASS: repeated Action keyword")


def test_unparseable_reply_gives_empty_action():
    actions = parse("I am not sure what to do")
    assert len(actions) == 1
    assert actions[0].action_type == ""
    assert actions[0].action_inputs == {}
    assert actions[0].thought == ""
    print("  PASS: unparseable reply")


def test_degenerate_inputs_do_not_raise():
    for text in ("", "Action:", "no action keyword at all"):
        actions = parse(text)
        assert len(actions) == 1
        assert actions[0].action_type == ""
        assert actions[0].action_inputs == {}
    print("  PASS: degenerate inputs")


def test_empty_parameters_are_skipped():
    action = parse("Action: scroll(start_box='', direction='down')")[0]
    assert action.action_inputs == {"direction": "down"}
    print("  PASS: empty parameters skipped")


# ── 4. Coordinates ──────────────────────────────────────────────


def test_factor_pair_normalizes_each_axis():
    action = parse("Action: click(start_box='(500,250)')", factor=(1000, 500))[0]
    assert action.action_inputs["start_box"] == "[0.5,0.5,0.5,0.5]"
    print("  PASS: factor pair")


def test_screen_context_adds_pixel_coords():
    action = parse(
        "Action: drag(start_box='(279,81)', end_box='(500,500)')",
        screen_context=ScreenContext(width=1920, height=1080),
    )[0]
    assert action.action_inputs["start_coords"] == pytest.approx([535.68, 87.48])
    assert action.action_inputs["end_coords"] == pytest.approx([960.0, 540.0])
    print("  PASS: screen coords")


def test_scale_factor_multiplies_coords():
    action = parse(
        "Action: click(start_box='(500,500)')",
        screen_context=ScreenContext(width=1920, height=1080),
        scale_factor=2,
    )[0]
    assert action.action_inputs["start_coords"] == pytest.approx([1920.0, 1080.0])
    print("  PASS: scale factor")


def test_v1_5_uses_resized_image_space():
    action = parse(
        "Action: click(start_box='(966,546)')",
        screen_context=ScreenContext(width=1920, height=1080),
        model_version="1.5",
    )[0]
    assert action.action_inputs["start_box"] == "[0.5,0.5,0.5,0.5]"
    assert action.action_inputs["start_coords"] == pytest.approx([960.0, 540.0])
    print("  PASS: v1.5 sizing")


# ── 5. o1 dialect ───────────────────────────────────────────────


def test_o1_dialect():
    text = (
        "<Thought>I see the login page</Thought>\n"
        "Action_Summary: Click login\n"
        "Action: click(start_box='(100,200)')</Output>"
    )
    action = parse(text, dialect="o1")[0]
    assert action.thought == "I see the login page\n<Action_Summary>\nClick login"
    assert action.action_type == "click"
    assert action.action_inputs["start_box"] == "[0.1,0.2,0.1,0.2]"
    print("  PASS: o1 dialect")


def test_o1_missing_parts():
    action = parse("<Output>nothing useful</Output>", dialect="o1")[0]
    assert action.thought == "\n<Action_Summary>\n"
    assert action.action_type == ""
    print("  PASS: o1 missing parts")
