from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from genstudio.core.config import get_settings
from genstudio.core.errors import ProviderError
from genstudio.providers.llm.base import PromptLLMProvider
from genstudio.services import credits


logger = logging.getLogger(__name__)

# Style references appended to the seed instruction.
STYLE_PRESETS: tuple[tuple[str, str], ...] = (
    ("Cinematic", "cinematic still, dramatic lighting, shallow depth of field, 35mm film grain"),
    ("Studio portrait", "studio portrait, softbox lighting, neutral backdrop, sharp focus on the eyes"),
    ("Editorial", "fashion editorial photograph, natural light, magazine cover composition"),
    ("Fantasy", "epic fantasy illustration, volumetric light, intricate costume details"),
    ("Watercolor", "loose watercolor painting, soft washes, visible paper texture"),
)


@dataclass(frozen=True)
class PromptAssistResult:
    prompt: str
    aux_credits: int


def build_instruction(keyword: str, *, preset_limit: int | None = None) -> str:
    settings = get_settings()
    presets = STYLE_PRESETS if preset_limit is None else STYLE_PRESETS[:preset_limit]
    styles = "\n\n".join(f"{label}: {prompt}" for label, prompt in presets)
    return f"{settings.prompt_seed_instruction}\n\n{styles}\n\nKeyword: {keyword.strip()}\n"


async def assist_prompt(
    session: AsyncSession,
    llm: PromptLLMProvider,
    *,
    principal_id: str,
    keyword: str,
) -> PromptAssistResult:
    # Aux credits follow the same check -> call -> deduct admission as tools.
    cost = get_settings().prompt_assist_aux_cost
    decision = await credits.check_aux(session, principal_id, cost)
    decision.raise_for_denial()

    prompt = (await llm.complete(build_instruction(keyword))).strip()
    if not prompt:
        raise ProviderError("Prompt assist returned an empty completion")

    deducted = await credits.deduct_aux(session, principal_id, cost)
    logger.info("prompt_assist_completed principal_id=%s aux_remaining=%s", principal_id, deducted.new_balance)
    return PromptAssistResult(prompt=prompt, aux_credits=deducted.new_balance)
