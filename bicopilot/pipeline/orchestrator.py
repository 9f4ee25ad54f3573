"""
Streaming Orchestrator

Explicit state machine over the pipeline stages:

    Received -> CacheCheck -> Classifying -> SchemaRetrieval -> Budgeting
             -> PromptAssembly -> Generating -> Validating -> Executing -> Completed
    CacheCheck -> Completed (cache hit)
    any non-terminal -> Failed

``run`` is the stepper: an async generator yielding one ``StreamingProgressEvent``
per transition (plus SQL chunk events while generating) and always ending with
a ``result`` event that carries the ``PipelineResult``. No exception escapes it.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Dict, FrozenSet, List, Optional, Tuple, TypeVar

from bicopilot.config import settings
from bicopilot.context.budget import TokenBudgetManager, estimate_tokens
from bicopilot.context.classifier import BusinessContextClassifier
from bicopilot.context.models import (
    BudgetedContext,
    BusinessContextProfile,
    CacheEntry,
    ContextualBusinessSchema,
    PipelineRequest,
    PipelineResult,
    PipelineStage,
    StreamingProgressEvent,
)
from bicopilot.context.prompt_builder import AssembledPrompt, PromptAssembler
from bicopilot.context.relevance import SchemaRelevanceEngine
from bicopilot.context.repository import SchemaRepository
from bicopilot.core.errors import (
    GenerationError,
    GenerationTimeoutError,
    InvalidTransitionError,
    PipelineCancelledError,
    PipelineError,
)
from bicopilot.core.generation import GenerationBackend, extract_sql
from bicopilot.core.semantic_cache import SemanticCache
from bicopilot.core.sql_exec import SQLExecutionError, SQLExecutor
from bicopilot.core.sql_guard import SQLGuard, SQLValidationError
from bicopilot.pipeline.session_context import SessionContextStore
from bicopilot.smart_logger import SmartLogger
from bicopilot.utils.log_sanitize import sanitize_for_log

__all__ = [
    "TRANSITIONS",
    "STAGE_PROGRESS",
    "PipelineStateMachine",
    "StreamingOrchestrator",
]

T = TypeVar("T")
S = PipelineStage
CATEGORY = "pipeline"

# Re-allocation rounds when the rendered prompt still overshoots the ceiling.
MAX_BUDGET_PASSES = 4

TRANSITIONS: Dict[PipelineStage, FrozenSet[PipelineStage]] = {
    S.RECEIVED: frozenset({S.CACHE_CHECK, S.FAILED}),
    S.CACHE_CHECK: frozenset({S.CLASSIFYING, S.COMPLETED, S.FAILED}),
    S.CLASSIFYING: frozenset({S.SCHEMA_RETRIEVAL, S.FAILED}),
    S.SCHEMA_RETRIEVAL: frozenset({S.BUDGETING, S.FAILED}),
    S.BUDGETING: frozenset({S.PROMPT_ASSEMBLY, S.FAILED}),
    S.PROMPT_ASSEMBLY: frozenset({S.GENERATING, S.FAILED}),
    S.GENERATING: frozenset({S.VALIDATING, S.FAILED}),
    S.VALIDATING: frozenset({S.EXECUTING, S.FAILED}),
    S.EXECUTING: frozenset({S.COMPLETED, S.FAILED}),
    S.COMPLETED: frozenset(),
    S.FAILED: frozenset(),
}

STAGE_PROGRESS: Dict[PipelineStage, int] = {
    S.RECEIVED: 0,
    S.CACHE_CHECK: 5,
    S.CLASSIFYING: 10,
    S.SCHEMA_RETRIEVAL: 20,
    S.BUDGETING: 40,
    S.PROMPT_ASSEMBLY: 65,
    S.GENERATING: 70,
    S.VALIDATING: 90,
    S.EXECUTING: 95,
    S.COMPLETED: 100,
}

STAGE_MESSAGES: Dict[PipelineStage, str] = {
    S.RECEIVED: "Question received",
    S.CACHE_CHECK: "Checking cache",
    S.CLASSIFYING: "Classifying business context",
    S.SCHEMA_RETRIEVAL: "Selecting relevant schema",
    S.BUDGETING: "Fitting context into the token budget",
    S.PROMPT_ASSEMBLY: "Assembling prompt",
    S.GENERATING: "Generating SQL",
    S.VALIDATING: "Validating SQL",
    S.EXECUTING: "Executing SQL",
    S.COMPLETED: "Completed",
}

_END_OF_STREAM = object()


class PipelineStateMachine:
    """Current stage + last completed stage; every move is checked against ``TRANSITIONS``."""

    def __init__(self) -> None:
        self.stage: PipelineStage = S.RECEIVED
        self.last_completed: Optional[PipelineStage] = None
        self.history: List[PipelineStage] = [S.RECEIVED]

    def can_transition(self, target: PipelineStage) -> bool:
        return target in TRANSITIONS[self.stage]

    def advance(self, target: PipelineStage) -> PipelineStage:
        if not self.can_transition(target):
            raise InvalidTransitionError(
                f"Illegal transition {self.stage.value} -> {target.value}", stage=self.stage.value
            )
        if target != S.FAILED:
            self.last_completed = S.COMPLETED if target == S.COMPLETED else self.stage
        self.stage = target
        self.history.append(target)
        return target

    def fail(self) -> None:
        if not self.stage.is_terminal:
            self.advance(S.FAILED)


@dataclass
class _RunState:
    request: PipelineRequest
    fsm: PipelineStateMachine = field(default_factory=PipelineStateMachine)
    profile: Optional[BusinessContextProfile] = None
    schema: Optional[ContextualBusinessSchema] = None
    budgeted: Optional[BudgetedContext] = None
    prompt: Optional[AssembledPrompt] = None
    chunks: List[str] = field(default_factory=list)
    sql: str = ""
    warnings: List[str] = field(default_factory=list)
    started: float = field(default_factory=time.perf_counter)
    stage_started: float = field(default_factory=time.perf_counter)

    @property
    def partial_sql(self) -> str:
        return extract_sql("".join(self.chunks))


def _check_cancel(cancel_event: Optional[asyncio.Event], stage: PipelineStage) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise PipelineCancelledError("Request cancelled", stage=stage.value)


async def _next_chunk(stream: AsyncIterator[str]) -> Any:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return _END_OF_STREAM


class StreamingOrchestrator:
    def __init__(
        self,
        *,
        repository: SchemaRepository,
        generator: GenerationBackend,
        classifier: Optional[BusinessContextClassifier] = None,
        relevance: Optional[SchemaRelevanceEngine] = None,
        budget: Optional[TokenBudgetManager] = None,
        assembler: Optional[PromptAssembler] = None,
        cache: Optional[SemanticCache] = None,
        guard: Optional[SQLGuard] = None,
        executor: Optional[SQLExecutor] = None,
        generation_timeout_seconds: Optional[float] = None,
        sessions: Optional[SessionContextStore] = None,
    ):
        self.repository = repository
        self.generator = generator
        self.classifier = classifier or BusinessContextClassifier()
        self.relevance = relevance or SchemaRelevanceEngine()
        self.budget = budget or TokenBudgetManager()
        self.assembler = assembler or PromptAssembler()
        self.cache = cache
        self.guard = guard or SQLGuard()
        self.executor = executor
        self.sessions = sessions
        self.generation_timeout_seconds = float(
            settings.generation_timeout_seconds if generation_timeout_seconds is None else generation_timeout_seconds
        )

    # ------------------------------------------------------------------
    # Cancellable awaits
    # ------------------------------------------------------------------

    @staticmethod
    async def _await_cancellable(
        awaitable: Awaitable[T],
        cancel_event: Optional[asyncio.Event],
        stage: PipelineStage,
        *,
        timeout: Optional[float] = None,
    ) -> T:
        """Await ``awaitable``, abandoning it when ``cancel_event`` fires or ``timeout`` elapses."""
        task = asyncio.ensure_future(awaitable)
        if cancel_event is None:
            return await asyncio.wait_for(task, timeout=timeout)
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if cancel_event.is_set():
            raise PipelineCancelledError("Request cancelled", stage=stage.value)
        raise asyncio.TimeoutError()

    # ------------------------------------------------------------------
    # Stages (pure step + at most one I/O call each)
    # ------------------------------------------------------------------

    def classify(self, request: PipelineRequest) -> BusinessContextProfile:
        prior = request.prior_profile
        if prior is None and self.sessions is not None and request.session_id:
            prior = self.sessions.get(request.user_id, request.session_id)
        profile = self.classifier.classify(request.question, prior)
        if self.sessions is not None and request.session_id:
            self.sessions.put(request.user_id, request.session_id, profile)
        return profile

    async def retrieve(
        self, profile: BusinessContextProfile, request: PipelineRequest, cancel_event: Optional[asyncio.Event] = None
    ) -> ContextualBusinessSchema:
        return await self._await_cancellable(
            self.relevance.select_relevant_schema(profile, self.repository, request.max_tables),
            cancel_event,
            S.SCHEMA_RETRIEVAL,
        )

    async def fit_budget(
        self,
        profile: BusinessContextProfile,
        schema: ContextualBusinessSchema,
        request: PipelineRequest,
        warnings: Optional[List[str]] = None,
    ) -> BudgetedContext:
        try:
            candidates = await self.repository.get_examples()
        except Exception as exc:
            SmartLogger.log(
                "WARNING",
                "pipeline.examples.failed",
                category=CATEGORY,
                params=sanitize_for_log({"error": repr(exc)}),
            )
            if warnings is not None:
                warnings.append("query examples unavailable; using built-in examples")
            candidates = []
        examples = self.assembler.select_examples(profile, schema.table_names, candidates)
        total = int(request.total_token_budget or settings.total_token_budget)
        reserved = self.assembler.overhead_tokens(request.question, profile, schema)
        budgeted = self.budget.allocate(total, schema, examples=examples, reserved_tokens=reserved)
        # Sections are estimated with per-content multipliers; re-measure the rendered prompt.
        for _ in range(MAX_BUDGET_PASSES):
            excess = estimate_tokens(self.assembler.build_prompt(request.question, profile, budgeted)) - total
            if excess <= 0 or budgeted.total_tokens == 0:
                break
            reserved += excess
            budgeted = self.budget.allocate(total, schema, examples=examples, reserved_tokens=reserved)
        return budgeted

    async def build_prompt(
        self, request: PipelineRequest
    ) -> Tuple[BusinessContextProfile, BudgetedContext, AssembledPrompt]:
        """Classify, retrieve, budget and assemble without generating (used by ``/ask/prompt``)."""
        profile = self.classify(request)
        schema = await self.retrieve(profile, request)
        budgeted = await self.fit_budget(profile, schema, request)
        return profile, budgeted, self.assembler.assemble(request.question, profile, budgeted)

    async def _generate(
        self, state: _RunState, cancel_event: Optional[asyncio.Event]
    ) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.generation_timeout_seconds
        stream = self.generator.generate_stream(state.prompt.text).__aiter__()
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                chunk = await self._await_cancellable(
                    _next_chunk(stream), cancel_event, S.GENERATING, timeout=remaining
                )
                if chunk is _END_OF_STREAM:
                    return
                state.chunks.append(chunk)
                yield chunk
        except asyncio.TimeoutError:
            raise GenerationTimeoutError(
                f"Generation timed out after {self.generation_timeout_seconds:g}s",
                stage=S.GENERATING.value,
                partial_text="".join(state.chunks),
            )
        except (PipelineCancelledError, GenerationError):
            raise
        except Exception as exc:
            raise GenerationError(
                f"Generation backend failed: {exc}",
                stage=S.GENERATING.value,
                partial_text="".join(state.chunks),
            ) from exc
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    # ------------------------------------------------------------------
    # Events / results
    # ------------------------------------------------------------------

    def _transition(self, state: _RunState, target: PipelineStage) -> StreamingProgressEvent:
        previous = state.fsm.stage
        state.fsm.advance(target)
        now = time.perf_counter()
        SmartLogger.log(
            "DEBUG",
            "pipeline.stage.done",
            category=CATEGORY,
            params={
                "stage": previous.value,
                "next": target.value,
                "elapsed_ms": round((now - state.stage_started) * 1000.0, 2),
            },
        )
        state.stage_started = now
        return StreamingProgressEvent(
            stage=target, message=STAGE_MESSAGES[target], progress_percent=STAGE_PROGRESS[target]
        )

    def _prompt_details(self, state: _RunState) -> Dict[str, Any]:
        details: Dict[str, Any] = {}
        if state.profile is not None:
            details.update({
                "intent": state.profile.intent.value,
                "domain": state.profile.domain.label or state.profile.domain.name,
                "domain_confidence": round(state.profile.domain.confidence, 4),
            })
        if state.prompt is not None and state.budgeted is not None:
            details.update(state.prompt.details(state.budgeted))
        elif state.schema is not None:
            details["selected_tables"] = state.schema.table_fqns
        return details

    def _result_from_cache(self, request: PipelineRequest, entry: CacheEntry) -> PipelineResult:
        resp = entry.cached_response or {}
        details = dict(resp.get("prompt_details") or {})
        details["cache"] = {"tier": entry.tier, "similarity": round(entry.similarity, 4)}
        return PipelineResult(
            status="completed",
            question=request.question,
            sql=entry.generated_sql,
            rows=list(resp.get("rows") or []),
            columns=list(resp.get("columns") or []),
            confidence=float(resp.get("confidence") or 0.0),
            cached=True,
            prompt_details=details,
            last_completed_stage=S.COMPLETED,
            warnings=list(resp.get("warnings") or []),
        )

    def _final_event(self, state: _RunState, result: PipelineResult) -> StreamingProgressEvent:
        stage = state.fsm.stage
        if stage == S.COMPLETED:
            progress, message = 100, STAGE_MESSAGES[S.COMPLETED]
        else:
            last = state.fsm.last_completed
            progress = STAGE_PROGRESS.get(last, 0) if last else 0
            message = result.error or result.status
        return StreamingProgressEvent(
            stage=stage,
            message=message,
            progress_percent=progress,
            payload={"result": result.to_dict()},
            kind="result",
        )

    def _failure(self, state: _RunState, status: str, error: str, partial_sql: str = "") -> PipelineResult:
        failed_at = state.fsm.stage
        state.fsm.fail()
        SmartLogger.log(
            "INFO" if status == "cancelled" else "WARNING",
            f"pipeline.{status}",
            category=CATEGORY,
            params=sanitize_for_log({
                "question": state.request.question[:300],
                "stage": failed_at.value,
                "last_completed_stage": state.fsm.last_completed.value if state.fsm.last_completed else None,
                "error": error,
                "partial_sql": partial_sql[:500],
                "elapsed_ms": round((time.perf_counter() - state.started) * 1000.0, 2),
            }),
            max_inline_chars=0,
        )
        return PipelineResult(
            status=status,
            question=state.request.question,
            sql=state.sql,
            confidence=state.profile.confidence_score if state.profile else 0.0,
            prompt_details=self._prompt_details(state),
            last_completed_stage=state.fsm.last_completed,
            error=error,
            partial_sql=partial_sql,
            warnings=list(state.warnings),
        )

    # ------------------------------------------------------------------
    # Stepper
    # ------------------------------------------------------------------

    async def _steps(
        self, state: _RunState, cancel_event: Optional[asyncio.Event]
    ) -> AsyncIterator[Any]:
        """Yields progress events; the last item is the ``PipelineResult``."""
        request = state.request
        question = request.question

        yield self._transition(state, S.CACHE_CHECK)
        cache_on = self.cache is not None and self.cache.is_enabled(request.use_cache)
        if cache_on:
            entry = await self._await_cancellable(
                self.cache.lookup(question, use_cache=request.use_cache), cancel_event, S.CACHE_CHECK
            )
            if entry is not None:
                result = self._result_from_cache(request, entry)
                yield self._transition(state, S.COMPLETED)
                yield result
                return
        _check_cancel(cancel_event, S.CACHE_CHECK)

        yield self._transition(state, S.CLASSIFYING)
        state.profile = self.classify(request)
        _check_cancel(cancel_event, S.CLASSIFYING)

        yield self._transition(state, S.SCHEMA_RETRIEVAL)
        state.schema = await self.retrieve(state.profile, request, cancel_event)
        if state.schema.used_fallback:
            state.warnings.append("no table cleared the relevance threshold; using catalog fallback")
        _check_cancel(cancel_event, S.SCHEMA_RETRIEVAL)

        yield self._transition(state, S.BUDGETING)
        state.budgeted = await self._await_cancellable(
            self.fit_budget(state.profile, state.schema, request, state.warnings), cancel_event, S.BUDGETING
        )
        state.warnings.extend(state.budgeted.warnings)
        _check_cancel(cancel_event, S.BUDGETING)

        yield self._transition(state, S.PROMPT_ASSEMBLY)
        state.prompt = self.assembler.assemble(question, state.profile, state.budgeted)
        _check_cancel(cancel_event, S.PROMPT_ASSEMBLY)

        yield self._transition(state, S.GENERATING)
        async for chunk in self._generate(state, cancel_event):
            yield StreamingProgressEvent(
                stage=S.GENERATING,
                message="SQL chunk",
                progress_percent=STAGE_PROGRESS[S.GENERATING],
                payload={"chunk": chunk},
                kind="chunk",
            )
        _check_cancel(cancel_event, S.GENERATING)

        yield self._transition(state, S.VALIDATING)
        state.sql, guard_warnings = self.guard.validate(
            "".join(state.chunks), allowed_tables=state.budgeted.schema.table_fqns
        )
        state.warnings.extend(guard_warnings)
        _check_cancel(cancel_event, S.VALIDATING)

        yield self._transition(state, S.EXECUTING)
        rows: List[List[Any]] = []
        columns: List[str] = []
        if request.execute and self.executor is not None:
            executed = await self._await_cancellable(self.executor.run(state.sql), cancel_event, S.EXECUTING)
            rows, columns = executed["rows"], executed["columns"]
        elif request.execute:
            state.warnings.append("execution requested but no target database is configured")
        _check_cancel(cancel_event, S.EXECUTING)

        result = PipelineResult(
            status="completed",
            question=question,
            sql=state.sql,
            rows=rows,
            columns=columns,
            confidence=state.profile.confidence_score,
            cached=False,
            prompt_details=self._prompt_details(state),
            warnings=list(state.warnings),
        )
        if cache_on:
            _check_cancel(cancel_event, S.EXECUTING)
            await self.cache.store(
                question,
                state.sql,
                {
                    "rows": rows,
                    "columns": columns,
                    "confidence": result.confidence,
                    "prompt_details": result.prompt_details,
                    "warnings": result.warnings,
                },
                use_cache=request.use_cache,
            )
        yield self._transition(state, S.COMPLETED)
        result.last_completed_stage = S.COMPLETED
        yield result

    async def run(
        self, request: PipelineRequest, cancel_event: Optional[asyncio.Event] = None
    ) -> AsyncIterator[StreamingProgressEvent]:
        state = _RunState(request=request)
        yield StreamingProgressEvent(
            stage=S.RECEIVED, message=STAGE_MESSAGES[S.RECEIVED], progress_percent=STAGE_PROGRESS[S.RECEIVED]
        )
        result: Optional[PipelineResult] = None
        try:
            if not (request.question or "").strip():
                raise PipelineError("Question is empty", stage=S.RECEIVED.value)
            async for item in self._steps(state, cancel_event):
                if isinstance(item, PipelineResult):
                    result = item
                else:
                    yield item
        except PipelineCancelledError as exc:
            result = self._failure(state, "cancelled", str(exc))
        except GenerationError as exc:
            result = self._failure(state, "failed", str(exc), partial_sql=extract_sql(exc.partial_text))
        except PipelineError as exc:
            result = self._failure(state, "failed", str(exc), partial_sql=state.partial_sql)
        except SQLValidationError as exc:
            result = self._failure(state, "failed", f"SQL validation failed: {exc}", partial_sql=state.partial_sql)
        except SQLExecutionError as exc:
            result = self._failure(state, "failed", f"SQL execution failed: {exc}", partial_sql=state.sql)
        except Exception as exc:
            SmartLogger.log(
                "ERROR",
                "pipeline.unexpected_error",
                category=CATEGORY,
                params=sanitize_for_log({"stage": state.fsm.stage.value, "error": repr(exc)}),
                max_inline_chars=0,
            )
            result = self._failure(state, "failed", f"Unexpected error: {exc}", partial_sql=state.partial_sql)
        else:
            SmartLogger.log(
                "INFO",
                "pipeline.completed",
                category=CATEGORY,
                params={
                    "question": request.question[:300],
                    "cached": bool(result and result.cached),
                    "sql": (result.sql if result else "")[:500],
                    "elapsed_ms": round((time.perf_counter() - state.started) * 1000.0, 2),
                },
                max_inline_chars=0,
            )
        yield self._final_event(state, result)

    async def run_to_result(
        self, request: PipelineRequest, cancel_event: Optional[asyncio.Event] = None
    ) -> PipelineResult:
        """Drain ``run`` and return the final ``PipelineResult``."""
        final: Optional[StreamingProgressEvent] = None
        async for event in self.run(request, cancel_event):
            final = event
        return _result_from_event(request, final)


def _result_from_event(request: PipelineRequest, event: Optional[StreamingProgressEvent]) -> PipelineResult:
    data = (event.payload or {}).get("result") if event else None
    if not data:
        return PipelineResult(status="failed", question=request.question, error="pipeline produced no result")
    last = data.get("last_completed_stage")
    return PipelineResult(
        status=data["status"],
        question=data["question"],
        sql=data.get("sql") or "",
        rows=list(data.get("rows") or []),
        columns=list(data.get("columns") or []),
        confidence=float(data.get("confidence") or 0.0),
        cached=bool(data.get("cached")),
        prompt_details=dict(data.get("prompt_details") or {}),
        last_completed_stage=PipelineStage(last) if last else None,
        error=data.get("error"),
        partial_sql=data.get("partial_sql") or "",
        warnings=list(data.get("warnings") or []),
    )
