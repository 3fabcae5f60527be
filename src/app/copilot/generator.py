"""Deal analysis generation over the deal-analysis function's SSE stream.

AnalysisGenerator posts {dealId, analysisType, inputData} to the function,
reads the event stream as it arrives, and yields events for the caller to
forward:

- ``{"type": "meta", "notionConnected": bool, "dealName": str}``
- ``{"type": "delta", "text": str}``
- ``{"type": "done", "analysis": {...}}`` once the result has been saved

The function's own events carry either a ``metadata`` object or an
OpenAI-style ``choices[0].delta.content`` chunk.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import structlog

from src.app.copilot.analysis import analysis_title, build_input_data
from src.app.copilot.repository import AnalysisRepository
from src.app.copilot.schemas import (
    AnalysisFields,
    AnalysisResult,
    AnalysisType,
    DealAnalysisCreate,
)
from src.app.deals.schemas import DealRead
from src.app.services.functions import FunctionsClient, iter_sse_json

logger = structlog.get_logger(__name__)

FUNCTION_NAME = "deal-analysis"
DEFAULT_ERROR = "Failed to generate analysis"


def _delta_content(event: dict[str, Any]) -> str | None:
    choices = event.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    delta = choices[0].get("delta") if isinstance(choices[0], dict) else None
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) and content else None


class AnalysisGenerator:
    """Runs a generation and saves the finished analysis.

    Args:
        functions: Client for the hosted functions.
        repository: Where finished analyses are persisted.
    """

    def __init__(self, functions: FunctionsClient, repository: AnalysisRepository) -> None:
        self._functions = functions
        self._repository = repository

    async def stream(
        self,
        user_id: str,
        deal: DealRead,
        analysis_type: AnalysisType,
        fields: AnalysisFields,
        *,
        save: bool = True,
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield meta/delta events, then a done event with the saved analysis.

        Raises:
            FunctionError: If the function answers with a non-success status.
            httpx.HTTPError: If the connection fails or drops mid-stream.
        """
        input_data = build_input_data(analysis_type, fields, deal)
        result = AnalysisResult(
            deal_name=deal.project_name,
            title=analysis_title(analysis_type, fields, deal),
        )
        payload = {
            "dealId": deal.id,
            "analysisType": analysis_type.value,
            "inputData": input_data,
        }

        logger.info("copilot.generation_started", deal_id=deal.id, analysis_type=analysis_type.value)
        chunks: list[str] = []
        async with self._functions.stream(FUNCTION_NAME, payload, default_error=DEFAULT_ERROR) as response:
            async for event in iter_sse_json(response.aiter_lines()):
                metadata = event.get("metadata")
                if isinstance(metadata, dict):
                    result.notion_connected = bool(metadata.get("notionConnected"))
                    result.deal_name = metadata.get("dealName") or deal.project_name
                    yield {
                        "type": "meta",
                        "notionConnected": result.notion_connected,
                        "dealName": result.deal_name,
                        "title": result.title,
                    }
                    continue
                content = _delta_content(event)
                if content:
                    chunks.append(content)
                    yield {"type": "delta", "text": content}

        result.content = "".join(chunks)
        logger.info(
            "copilot.generation_completed",
            deal_id=deal.id,
            analysis_type=analysis_type.value,
            length=len(result.content),
        )

        saved = None
        if save and result.content:
            saved = await self._repository.save_analysis(
                user_id,
                DealAnalysisCreate(
                    deal_id=deal.id,
                    analysis_type=analysis_type,
                    title=result.title,
                    result_content=result.content,
                    input_data=input_data,
                    notion_connected=result.notion_connected,
                ),
            )
        yield {
            "type": "done",
            "result": result.model_dump(),
            "analysis": saved.model_dump(mode="json") if saved else None,
        }

    async def generate(
        self,
        user_id: str,
        deal: DealRead,
        analysis_type: AnalysisType,
        fields: AnalysisFields,
        *,
        save: bool = True,
    ) -> AnalysisResult:
        """Run a generation to completion and return the collected result."""
        final = AnalysisResult(deal_name=deal.project_name)
        async for event in self.stream(user_id, deal, analysis_type, fields, save=save):
            if event["type"] == "done":
                final = AnalysisResult.model_validate(event["result"])
        return final
