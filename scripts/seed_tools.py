from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any

from genstudio.persistence.db import SessionLocal
from genstudio.persistence.repos.tool_configs import upsert_tool_config


# A small starter catalog; production catalogs are loaded from --file.
DEFAULT_TOOLS: tuple[dict[str, Any], ...] = (
    {
        "slug": "ai-photo-filter/ai-anime-filter",
        "model_identifier": "google/nano-banana",
        "prompt_template": "Transform this photo into a vibrant anime illustration. {{prompt}}",
        "credit_cost": 1,
    },
    {
        "slug": "ai-image-editing/remove-background",
        "model_identifier": "cjwbw/rembg",
        "prompt_template": "Remove the background.",
        "credit_cost": 1,
    },
    {
        "slug": "ai-video-generation/image-to-video",
        "model_identifier": "wan-video/wan-2.2-i2v-fast",
        "prompt_template": "{{prompt}}",
        "default_aspect_ratio": "16:9",
        "credit_cost": 5,
    },
)


async def _seed(tools: list[dict[str, Any]]) -> None:
    async with SessionLocal() as session:
        for tool in tools:
            config = await upsert_tool_config(session, **tool)
            print(f"upserted slug={config.slug} model={config.model_identifier} cost={config.credit_cost}")
        await session.commit()


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed the tool catalog")
    parser.add_argument("--file", default=None, help="JSON list of tool definitions")
    args = parser.parse_args()
    if args.file:
        tools = json.loads(Path(args.file).read_text(encoding="utf-8"))
    else:
        tools = [dict(tool) for tool in DEFAULT_TOOLS]
    asyncio.run(_seed(tools))


if __name__ == "__main__":
    main()
