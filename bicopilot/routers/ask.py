"""/ask endpoints: natural language question -> SQL through the context pipeline"""
from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from bicopilot.context.models import PipelineRequest
from bicopilot.core.errors import PipelineError, SchemaRetrievalError
from bicopilot.deps import get_orchestrator
from bicopilot.pipeline.orchestrator import StreamingOrchestrator
from bicopilot.smart_logger import SmartLogger


router = APIRouter(prefix="/ask", tags=["Query"])


class AskOptions(BaseModel):
    use_cache: Optional[bool] = Field(default=None, description="Override the cache switch for this request")
    execute: bool = Field(default=False, description="Run the validated SQL against the target database")
    max_tables: Optional[int] = Field(default=None, ge=1, le=50, description="Maximum tables in the schema context")
    total_token_budget: Optional[int] = Field(default=None, ge=1, description="Prompt token budget")


class AskRequest(BaseModel):
    """Request model for /ask endpoints"""
    question: str = Field(..., min_length=1, description="Natural language question")
    user_id: str = Field(default="", description="Caller identifier")
    session_id: str = Field(default="", description="Conversation identifier")
    options: AskOptions = Field(default_factory=AskOptions)

    def to_pipeline_request(self) -> PipelineRequest:
        return PipelineRequest(
            question=self.question.strip(),
            user_id=self.user_id,
            session_id=self.session_id,
            use_cache=self.options.use_cache,
            execute=self.options.execute,
            max_tables=self.options.max_tables,
            total_token_budget=self.options.total_token_budget,
        )


class AskResponse(BaseModel):
    """Response model for POST /ask"""
    status: str
    question: str
    sql: str = ""
    rows: List[List[Any]] = Field(default_factory=list)
    columns: List[str] = Field(default_factory=list)
    confidence: float = 0.0
    cached: bool = False
    prompt_details: Dict[str, Any] = Field(default_factory=dict)
    last_completed_stage: Optional[str] = None
    error: Optional[str] = None
    partial_sql: str = ""
    warnings: List[str] = Field(default_factory=list)


class PromptResponse(BaseModel):
    """Response model for POST /ask/prompt"""
    prompt: str
    intent: str
    domain: str
    prompt_details: Dict[str, Any]


def _require_question(request: AskRequest) -> None:
    if not request.question.strip():
        raise HTTPException(status_code=422, detail="question must not be blank")


@router.post("", response_model=AskResponse)
async def ask_question(
    request: AskRequest,
    orchestrator: StreamingOrchestrator = Depends(get_orchestrator),
):
    """
    Run the full pipeline and return the final result.
    Pipeline failures are reported in the body with ``status`` = failed.
    """
    _require_question(request)
    result = await orchestrator.run_to_result(request.to_pipeline_request())
    return AskResponse(**result.to_dict())


@router.post("/stream", response_class=StreamingResponse)
async def ask_question_stream(
    request: AskRequest,
    http_request: Request,
    orchestrator: StreamingOrchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    """NDJSON stream of progress events; the last line is the ``result`` event."""
    _require_question(request)
    pipeline_request = request.to_pipeline_request()
    cancel_event = asyncio.Event()

    async def event_iterator():
        events = orchestrator.run(pipeline_request, cancel_event)
        try:
            async for event in events:
                yield json.dumps(event.to_dict(), ensure_ascii=False, default=str) + "\n"
                if await http_request.is_disconnected():
                    SmartLogger.log(
                        "INFO",
                        "routers.ask.stream.client_disconnected",
                        category="routers.ask",
                        params={"question": pipeline_request.question[:300], "stage": event.stage.value},
                    )
                    cancel_event.set()
        except Exception as exc:
            payload = {"event": "error", "message": str(exc)}
            yield json.dumps(payload, ensure_ascii=False) + "\n"
        finally:
            cancel_event.set()
            await events.aclose()

    return StreamingResponse(event_iterator(), media_type="application/x-ndjson")


@router.post("/prompt", response_model=PromptResponse)
async def build_prompt(
    request: AskRequest,
    orchestrator: StreamingOrchestrator = Depends(get_orchestrator),
):
    """Assemble the prompt for a question without calling the generation backend."""
    _require_question(request)
    try:
        profile, budgeted, assembled = await orchestrator.build_prompt(request.to_pipeline_request())
    except SchemaRetrievalError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except (PipelineError, ValueError) as e:
        raise HTTPException(status_code=422, detail=str(e))
    return PromptResponse(
        prompt=assembled.text,
        intent=profile.intent.value,
        domain=profile.domain.label or profile.domain.name,
        prompt_details=assembled.details(budgeted),
    )
