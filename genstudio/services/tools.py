from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from genstudio.core.config import get_settings
from genstudio.core.errors import NotFoundError
from genstudio.persistence.repos import tool_configs as tool_configs_repo


logger = logging.getLogger(__name__)

PROMPT_PLACEHOLDER = "{{prompt}}"
DEFAULT_PROMPT = "Create a beautiful high-quality image. Keep it clean. No text, no watermarks."
OUTPUT_FORMATS = frozenset({"png", "jpg", "webp"})
SEEDANCE_ASPECT_RATIOS = frozenset({"16:9", "4:3", "1:1", "3:4", "9:16", "21:9", "9:21"})
_IMAGE_VIDEO_FAMILIES = ("wan-video", "pixverse", "seedance", "veo")
_TEXT_ONLY_VIDEO_FAMILIES = ("animate-diff", "minimax")


@dataclass(frozen=True)
class ToolRequest:
    prompt: str = ""
    image_url: str | None = None
    aspect_ratio: str | None = None
    output_format: str | None = None
    style_strength: float | None = None


@dataclass(frozen=True)
class ResolvedTool:
    slug: str
    model_identifier: str
    credit_cost: int
    prompt_template: str
    negative_prompt: str | None
    default_aspect_ratio: str
    default_output_format: str
    from_catalog: bool


async def resolve_tool(session: AsyncSession, slug: str) -> ResolvedTool:
    # Catalog entries win; unknown slugs fall back to the configured default model.
    settings = get_settings()
    config = await tool_configs_repo.get_tool_config(session, slug)
    if config is None:
        return ResolvedTool(
            slug=slug,
            model_identifier=settings.default_tool_model,
            credit_cost=settings.default_tool_credit_cost,
            prompt_template=PROMPT_PLACEHOLDER,
            negative_prompt=settings.default_negative_prompt,
            default_aspect_ratio="1:1",
            default_output_format="jpg",
            from_catalog=False,
        )
    if not config.enabled:
        raise NotFoundError(f"Tool {slug} is not available")
    return ResolvedTool(
        slug=slug,
        model_identifier=config.model_identifier,
        credit_cost=config.credit_cost,
        prompt_template=config.prompt_template or PROMPT_PLACEHOLDER,
        negative_prompt=config.negative_prompt or settings.default_negative_prompt,
        default_aspect_ratio=config.default_aspect_ratio or "1:1",
        default_output_format=config.default_output_format or "jpg",
        from_catalog=True,
    )


def render_prompt(template: str, prompt: str) -> str:
    user_prompt = prompt.strip()
    if PROMPT_PLACEHOLDER not in template:
        # Fixed-purpose tools carry their own prompt; user text is appended as guidance.
        if user_prompt:
            return f"{template} Additional instruction: {user_prompt}."
        return template
    if not user_prompt:
        return template.replace(PROMPT_PLACEHOLDER, "").strip() or DEFAULT_PROMPT
    return template.replace(PROMPT_PLACEHOLDER, user_prompt)


def build_tool_input(tool: ResolvedTool, request: ToolRequest) -> dict[str, Any]:
    """Build the provider input map, dropping keys a model family rejects."""
    model = tool.model_identifier.lower()
    output_format = request.output_format if request.output_format in OUTPUT_FORMATS else None
    payload: dict[str, Any] = {
        "prompt": render_prompt(tool.prompt_template, request.prompt or ""),
        "output_format": output_format or tool.default_output_format,
    }
    if "nano-banana" not in model and tool.negative_prompt:
        payload["negative_prompt"] = tool.negative_prompt

    image_url = (request.image_url or "").strip()
    if image_url:
        if "rembg" in model:
            payload["image"] = image_url
            payload.pop("prompt", None)
            payload.pop("negative_prompt", None)
        elif "sdxl" in model or "stable-diffusion" in model:
            payload["image"] = image_url
            if request.style_strength is not None:
                payload["prompt_strength"] = request.style_strength / 100
        elif any(family in model for family in _TEXT_ONLY_VIDEO_FAMILIES):
            pass
        elif any(family in model for family in _IMAGE_VIDEO_FAMILIES):
            payload["image"] = image_url
        else:
            payload["image_input"] = [image_url]
            payload["aspect_ratio"] = "match_input_image"
    else:
        payload["aspect_ratio"] = request.aspect_ratio or tool.default_aspect_ratio

    if "video" in tool.slug or "animate-diff" in model:
        _apply_video_rules(model, payload)
    return payload


def _apply_video_rules(model: str, payload: dict[str, Any]) -> None:
    # Video models emit their own container format.
    payload.pop("output_format", None)
    aspect = payload.get("aspect_ratio")
    if "seedance" in model:
        if aspect not in SEEDANCE_ASPECT_RATIOS:
            payload["aspect_ratio"] = "16:9"
    elif "wan-video" in model or "pixverse" in model:
        if not aspect or aspect == "match_input_image":
            payload["aspect_ratio"] = "16:9"
    elif "veo" in model or "hailuo" in model or "minimax" in model:
        payload.pop("aspect_ratio", None)
        payload.pop("negative_prompt", None)
    elif "animate-diff" in model:
        payload.pop("aspect_ratio", None)
    else:
        payload.pop("aspect_ratio", None)
        payload.pop("negative_prompt", None)
