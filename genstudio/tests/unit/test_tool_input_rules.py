from __future__ import annotations

from genstudio.services.tools import (
    DEFAULT_PROMPT,
    PROMPT_PLACEHOLDER,
    ResolvedTool,
    ToolRequest,
    build_tool_input,
    render_prompt,
)


def _tool(model: str, *, slug: str = "ai-photo-filter/test", template: str = PROMPT_PLACEHOLDER) -> ResolvedTool:
    return ResolvedTool(
        slug=slug,
        model_identifier=model,
        credit_cost=1,
        prompt_template=template,
        negative_prompt="blurry",
        default_aspect_ratio="1:1",
        default_output_format="jpg",
        from_catalog=True,
    )


def test_render_prompt_substitutes_placeholder() -> None:
    assert render_prompt("A photo of {{prompt}}, studio light", "a cat") == "A photo of a cat, studio light"


def test_render_prompt_appends_guidance_to_fixed_templates() -> None:
    rendered = render_prompt("Turn this photo into anime art.", "keep the hat")
    assert rendered == "Turn this photo into anime art. Additional instruction: keep the hat."
    assert render_prompt("Turn this photo into anime art.", "  ") == "Turn this photo into anime art."


def test_render_prompt_falls_back_to_default_when_empty() -> None:
    assert render_prompt(PROMPT_PLACEHOLDER, "") == DEFAULT_PROMPT


def test_text_to_image_uses_requested_aspect_ratio() -> None:
    payload = build_tool_input(_tool("stability-ai/sdxl:abc"), ToolRequest(prompt="a fox", aspect_ratio="16:9"))
    assert payload == {
        "prompt": "a fox",
        "output_format": "jpg",
        "negative_prompt": "blurry",
        "aspect_ratio": "16:9",
    }


def test_invalid_output_format_falls_back_to_tool_default() -> None:
    payload = build_tool_input(_tool("stability-ai/sdxl"), ToolRequest(prompt="x", output_format="tiff"))
    assert payload["output_format"] == "jpg"


def test_nano_banana_image_edit_uses_image_input_list() -> None:
    payload = build_tool_input(
        _tool("google/nano-banana"),
        ToolRequest(prompt="anime", image_url="https://img.test/in.jpg"),
    )
    assert payload["image_input"] == ["https://img.test/in.jpg"]
    assert payload["aspect_ratio"] == "match_input_image"
    assert "negative_prompt" not in payload


def test_background_removal_sends_only_the_image() -> None:
    payload = build_tool_input(
        _tool("cjwbw/rembg"),
        ToolRequest(prompt="ignored", image_url="https://img.test/in.png", output_format="png"),
    )
    assert payload == {"image": "https://img.test/in.png", "output_format": "png"}


def test_style_strength_becomes_prompt_strength_fraction() -> None:
    payload = build_tool_input(
        _tool("stability-ai/sdxl"),
        ToolRequest(prompt="oil painting", image_url="https://img.test/in.png", style_strength=40),
    )
    assert payload["image"] == "https://img.test/in.png"
    assert payload["prompt_strength"] == 0.4


def test_image_to_video_defaults_to_landscape() -> None:
    payload = build_tool_input(
        _tool("wan-video/wan-2.2-i2v-fast", slug="ai-video/image-to-video"),
        ToolRequest(prompt="waves", image_url="https://img.test/in.png"),
    )
    assert payload["image"] == "https://img.test/in.png"
    assert payload["aspect_ratio"] == "16:9"
    assert "output_format" not in payload


def test_seedance_rejects_unsupported_aspect_ratio() -> None:
    payload = build_tool_input(
        _tool("bytedance/seedance-1-lite", slug="ai-video/text-to-video"),
        ToolRequest(prompt="city at night", aspect_ratio="2:3"),
    )
    assert payload["aspect_ratio"] == "16:9"


def test_text_only_video_models_ignore_image_and_aspect() -> None:
    payload = build_tool_input(
        _tool("minimax/video-01", slug="ai-video/text-to-video"),
        ToolRequest(prompt="a comet", image_url="https://img.test/in.png", aspect_ratio="9:16"),
    )
    assert "image" not in payload
    assert "aspect_ratio" not in payload
    assert "negative_prompt" not in payload
