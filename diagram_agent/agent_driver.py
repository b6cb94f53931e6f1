"""
Agent session driver: processes one run from ``sending`` to a terminal state.

The driver streams a tool-calling model session while a stop poller watches
the ledger. Whatever happens, the run ends ``persisted``, ``stopped`` or
``error``; it is never left in flight. The only write to the shared
document is the single conditional commit against the scene version read
when processing started.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Mapping, Optional, assert_never

from diagram_agent import run_ledger
from diagram_agent.cancellation import CancellationToken, StopPoller
from diagram_agent.config import settings
from diagram_agent.database import now_ms
from diagram_agent.diagram_models import (
    TOOL_REGISTRY,
    MutationTool,
    ToolFailed,
    ToolOutcome,
    ToolSuccess,
)
from diagram_agent.events import (
    ChatTurn,
    ModelRequest,
    ModelSession,
    ReasoningDelta,
    StreamEvent,
    StreamFinished,
    TextDelta,
    ToolCall,
    ToolResult,
)
from diagram_agent.exceptions import (
    CommitConflict,
    DiagramAgentError,
    Forbidden,
    NoCandidateProduced,
    SceneTooLarge,
    SessionNotFound,
    StreamAborted,
    ToolFailure,
)
from diagram_agent.fallback import (
    MAX_FAILURE_CHARS,
    choose_fallback_tool,
    join_failure_reasons,
    truncate,
)
from diagram_agent.models import (
    AssistantPatch,
    Message,
    MessageRole,
    MessageType,
    ProcessRunResult,
    Run,
    RunPatch,
    RunStatus,
    Scene,
    SceneCommitConflict,
    SceneCommitFailed,
    SceneCommitResult,
    SceneCommitSuccess,
    ToolMessageUpdate,
    ToolName,
    ToolStatus,
    is_terminal,
)
from diagram_agent.progress import ProgressPublisher
from diagram_agent.scene_store import set_latest_scene

logger = logging.getLogger(__name__)

MAX_REASONING_SUMMARY_CHARS = 600
MAX_ERROR_CHARS = 280

EMPTY_CANVAS_REASON = "Canvas is empty. Use generateDiagram instead."

SYSTEM_PROMPT = "\n".join([
    "You are a diagram studio's planning assistant.",
    "For every request, call exactly one tool before replying.",
    "Tool routing:",
    "- Use generateDiagram when the scene is blank or user asks for a full new diagram.",
    "- Use tweakDiagram for small text/style updates.",
    "- Use restructureDiagram for structural changes.",
    "After tool completion, reply with 1-2 concise sentences about what changed.",
    "Do not mention internal IDs or hidden implementation details.",
])


@dataclass
class LatestToolCall:
    tool_call_id: str
    tool_name: ToolName


@dataclass
class RuntimeState:
    assistant_text: str = ""
    reasoning_text: str = ""
    proposed_scene: Optional[Scene] = None
    tool_used: Optional[ToolName] = None
    latest_tool_call: Optional[LatestToolCall] = None
    aborted: bool = False


def summarize_error(error: BaseException, fallback: str) -> str:
    message = str(error).strip()
    return truncate(message, MAX_ERROR_CHARS) if message else fallback


def parse_tool_name(raw: str) -> Optional[ToolName]:
    try:
        return ToolName(raw)
    except ValueError:
        return None


def extract_chat_history(
    messages: list[Message], current_prompt_message_id: str
) -> list[ChatTurn]:
    """Prior user/assistant chat, excluding the run's own prompt messages."""
    history = []
    for message in messages:
        if message.message_type != MessageType.CHAT:
            continue
        if message.prompt_message_id == current_prompt_message_id:
            continue
        if message.role not in (MessageRole.USER, MessageRole.ASSISTANT):
            continue
        content = (message.content or "").strip()
        if not content:
            continue
        history.append(ChatTurn(role=message.role.value, content=content))
    return history


def commit_failure_error(
    result: SceneCommitConflict | SceneCommitFailed, session_id: str
) -> DiagramAgentError:
    """Map a non-successful commit to the error shown on the assistant reply."""
    if isinstance(result, SceneCommitConflict):
        return CommitConflict(result.latest_scene_version)

    if result.reason == "forbidden":
        return Forbidden(session_id, "You no longer have permission to write this session.")
    if result.reason == "scene-too-large":
        return SceneTooLarge(result.max_bytes or 0, result.actual_bytes or 0)
    if result.reason == "session-not-found":
        return SessionNotFound(session_id, "Failed to persist the updated scene.")
    if result.reason == "run-stopped":
        return StreamAborted()
    assert_never(result.reason)


class RunToolExecutor:
    """Executes mutation tools for one run and records their tool messages.

    A successful tool replaces ``state.proposed_scene``; later tools in the
    same run start from that candidate rather than the stored scene.
    """

    def __init__(
        self,
        run: Run,
        state: RuntimeState,
        base_scene: Scene,
        tools: Mapping[ToolName, MutationTool],
    ):
        self.run = run
        self.state = state
        self.base_scene = base_scene
        self.tools = tools

    async def _record(self, tool_name: ToolName, tool_call_id: str, status: ToolStatus, **fields) -> None:
        await run_ledger.upsert_tool_message(
            self.run,
            ToolMessageUpdate(
                tool_call_id=tool_call_id,
                tool_name=tool_name.value,
                status=status,
                **fields,
            ),
        )

    async def __call__(self, tool_name: ToolName, tool_call_id: str) -> ToolOutcome:
        await self._record(tool_name, tool_call_id, ToolStatus.RUNNING)
        try:
            success = await self._invoke(tool_name)
        except ToolFailure as failure:
            logger.warning(
                "Tool %s failed for run %s: %s",
                tool_name.value, self.run.run_id[:12], failure.reason,
            )
            await self._record(
                tool_name, tool_call_id, ToolStatus.ERROR,
                tool_output={"status": "failed", "reason": failure.reason},
                error=failure.reason,
            )
            return ToolFailed(reason=failure.reason)

        await self._record(
            tool_name, tool_call_id, ToolStatus.COMPLETED,
            tool_output={
                **success.metadata,
                "status": "success",
                "elementCount": len(success.elements),
            },
        )
        return success

    async def _invoke(self, tool_name: ToolName) -> ToolSuccess:
        config = TOOL_REGISTRY[tool_name]
        source = self.state.proposed_scene or self.base_scene
        if config.requires_scene and source.is_blank():
            raise ToolFailure(tool_name.value, EMPTY_CANVAS_REASON)

        try:
            outcome = await self.tools[tool_name](source, self.run.prompt)
        except Exception as error:
            logger.exception("Tool %s raised for run %s", tool_name.value, self.run.run_id[:12])
            raise ToolFailure(
                tool_name.value, summarize_error(error, f"{tool_name.value} failed.")
            ) from error

        if isinstance(outcome, ToolFailed):
            reason = outcome.reason
            if outcome.issues:
                reason = truncate("; ".join(outcome.issues[:3]), MAX_ERROR_CHARS)
            raise ToolFailure(tool_name.value, reason)
        if not outcome.elements:
            raise ToolFailure(tool_name.value, f"{tool_name.value} produced no elements.")

        if outcome.app_state is not None:
            app_state = outcome.app_state
        elif config.requires_scene:
            app_state = source.app_state
        else:
            app_state = {}

        self.state.proposed_scene = Scene(elements=outcome.elements, app_state=app_state)
        self.state.tool_used = tool_name
        return outcome


class AgentDriver:
    """Drives runs through the model session, fallback policy and commit."""

    def __init__(
        self,
        model_session: ModelSession,
        tools: Mapping[ToolName, MutationTool],
        stop_poll_interval: Optional[float] = None,
        flush_interval: Optional[float] = None,
        max_turns: Optional[int] = None,
    ):
        self.model_session = model_session
        self.tools = tools
        self.stop_poll_interval = (
            stop_poll_interval if stop_poll_interval is not None
            else settings.stop_poll_interval_ms / 1000
        )
        self.flush_interval = (
            flush_interval if flush_interval is not None
            else settings.assistant_flush_interval_ms / 1000
        )
        self.max_turns = max_turns or settings.agent_max_turns

    async def process_run(self, run_id: str) -> ProcessRunResult:
        context = await run_ledger.load_run_context(run_id)
        if context is None:
            logger.warning("Run %s or its session is missing", run_id[:12])
            return ProcessRunResult(status="missing")

        run = context.run
        if is_terminal(run.status):
            logger.info("Run %s already %s; skipping", run_id[:12], run.status.value)
            return ProcessRunResult(status="terminal")

        state = RuntimeState()
        base_scene = context.session.latest_scene or Scene()
        expected_version = context.session.latest_scene_version
        history = extract_chat_history(context.messages, run.prompt_message_id)

        if not await self._transition(run, state, RunStatus.RUNNING):
            logger.info("Run %s was stopped before it started; skipping", run_id[:12])
            return ProcessRunResult(status="terminal")
        logger.info(
            "Processing run %s for session %s at scene version %d (trace %s)",
            run_id[:12], run.session_id[:8], expected_version, run.trace_id,
        )

        token = CancellationToken()
        poller = StopPoller(run.run_id, token, self.stop_poll_interval)
        publisher = ProgressPublisher(run.assistant_message_id, state, self.flush_interval)
        executor = RunToolExecutor(run, state, base_scene, self.tools)

        poller.start()
        try:
            return await self._drive(
                run, state, base_scene, expected_version, history, token, publisher, executor
            )
        except asyncio.CancelledError:
            await asyncio.shield(self._transition(
                run, state, RunStatus.ERROR,
                error="Run was interrupted before completion.",
                finished=True,
            ))
            raise
        except Exception as error:
            logger.exception("Run %s failed", run_id[:12])
            message = summarize_error(error, "Thread run failed before persistence.")
            await self._transition(
                run, state, RunStatus.ERROR,
                error=message,
                finished=True,
                content_override=state.assistant_text
                or "I hit an internal error while processing this request. Please retry.",
            )
            return ProcessRunResult(status="error")
        finally:
            await poller.stop()

    async def _drive(
        self,
        run: Run,
        state: RuntimeState,
        base_scene: Scene,
        expected_version: int,
        history: list[ChatTurn],
        token: CancellationToken,
        publisher: ProgressPublisher,
        executor: RunToolExecutor,
    ) -> ProcessRunResult:
        request = ModelRequest(
            system_prompt=SYSTEM_PROMPT,
            history=history,
            user_message="\n".join([
                f"User request: {run.prompt}",
                f"Current scene non-deleted elements: {len(base_scene.live_elements())}",
            ]),
            tools={name: config.description for name, config in TOOL_REGISTRY.items()},
            tool_choice="required",
            max_turns=self.max_turns,
            trace_id=run.trace_id,
        )

        stream_error = await self._run_stream(run, request, state, token, publisher, executor)

        if stream_error is not None:
            await self._transition(
                run, state, RunStatus.ERROR, error=stream_error, finished=True
            )
            return ProcessRunResult(status="error")

        if state.aborted or token.cancelled:
            return await self._stop(run, state)

        if state.proposed_scene is None:
            try:
                await self._ensure_candidate(run, base_scene, state, executor)
                await publisher.flush(force=True)
            except NoCandidateProduced as error:
                logger.warning("Run %s produced no candidate: %s", run.run_id[:12], error)
                await self._transition(
                    run, state, RunStatus.ERROR,
                    error=str(error),
                    finished=True,
                    content_override=state.assistant_text
                    or "I could not apply a diagram update. Please clarify your request and retry.",
                )
                return ProcessRunResult(status="error")

        if token.cancelled or await run_ledger.should_stop_run(run.run_id):
            return await self._stop(run, state)

        if not await self._transition(run, state, RunStatus.APPLYING):
            return await self._stop(run, state)

        scene = state.proposed_scene
        result = await set_latest_scene(
            run.session_id,
            expected_version,
            scene.elements,
            scene.app_state,
            owner_id=run.owner_id,
            run_id=run.run_id,
        )
        return await self._finish_commit(run, state, result)

    async def _finish_commit(
        self, run: Run, state: RuntimeState, result: SceneCommitResult
    ) -> ProcessRunResult:
        if isinstance(result, SceneCommitSuccess):
            if not state.assistant_text.strip():
                tool = state.tool_used or ToolName.RESTRUCTURE
                state.assistant_text = TOOL_REGISTRY[tool].summary

            await self._transition(
                run, state, RunStatus.PERSISTED,
                applied_scene_version=result.latest_scene_version,
                finished=True,
            )
            logger.info(
                "Run %s persisted scene version %d",
                run.run_id[:12], result.latest_scene_version,
            )
            return ProcessRunResult(
                status="persisted", latest_scene_version=result.latest_scene_version
            )

        if isinstance(result, SceneCommitFailed) and result.reason == "run-stopped":
            return await self._stop(run, state)

        if isinstance(result, (SceneCommitConflict, SceneCommitFailed)):
            error = commit_failure_error(result, run.session_id)
            logger.warning("Run %s commit rejected: %s", run.run_id[:12], result.status)
            await self._transition(
                run, state, RunStatus.ERROR,
                error=str(error),
                finished=True,
                content_override=state.assistant_text or str(error),
            )
            return ProcessRunResult(status="error")

        assert_never(result)

    async def _stop(self, run: Run, state: RuntimeState) -> ProcessRunResult:
        state.aborted = True
        await self._transition(run, state, RunStatus.STOPPED, finished=True)
        logger.info("Run %s stopped", run.run_id[:12])
        return ProcessRunResult(status="stopped")

    async def _run_stream(
        self,
        run: Run,
        request: ModelRequest,
        state: RuntimeState,
        token: CancellationToken,
        publisher: ProgressPublisher,
        executor: RunToolExecutor,
    ) -> Optional[str]:
        """Consume the model stream until it ends or the token is cancelled.

        Returns an error summary for a failed stream, None otherwise. An
        aborted stream sets ``state.aborted``.
        """
        consumer = asyncio.create_task(
            self._consume(run, request, state, token, publisher, executor),
            name=f"model-stream-{run.run_id[:12]}",
        )
        cancelled = asyncio.create_task(token.wait())
        try:
            await asyncio.wait({consumer, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not consumer.done():
                consumer.cancel()
                try:
                    await consumer
                except asyncio.CancelledError:
                    pass
                except Exception:
                    logger.debug("Model stream raised while aborting", exc_info=True)

        if consumer.cancelled():
            state.aborted = True
            return None

        error = consumer.exception()
        if error is None:
            return None
        if isinstance(error, StreamAborted) or token.cancelled:
            state.aborted = True
            return None

        logger.error("Model stream failed for run %s: %s", run.run_id[:12], error)
        return summarize_error(error, "Agent stream failed")

    async def _consume(
        self,
        run: Run,
        request: ModelRequest,
        state: RuntimeState,
        token: CancellationToken,
        publisher: ProgressPublisher,
        executor: RunToolExecutor,
    ) -> None:
        async for event in self.model_session.stream(request, executor, token):
            if token.cancelled:
                raise StreamAborted(token.reason or "stop-requested")
            await self._apply_event(run, state, publisher, event)

        if token.cancelled:
            raise StreamAborted(token.reason or "stop-requested")
        await publisher.flush(force=True)

    async def _apply_event(
        self,
        run: Run,
        state: RuntimeState,
        publisher: ProgressPublisher,
        event: StreamEvent,
    ) -> None:
        if isinstance(event, TextDelta):
            state.assistant_text += event.text
            await publisher.flush()
        elif isinstance(event, ReasoningDelta):
            state.reasoning_text = truncate(
                state.reasoning_text + event.text, MAX_REASONING_SUMMARY_CHARS
            )
            await publisher.flush()
        elif isinstance(event, ToolCall):
            tool_name = parse_tool_name(event.tool_name)
            if tool_name is not None:
                state.latest_tool_call = LatestToolCall(event.tool_call_id, tool_name)
            await run_ledger.upsert_tool_message(
                run,
                ToolMessageUpdate(
                    tool_call_id=event.tool_call_id,
                    tool_name=event.tool_name,
                    status=ToolStatus.PENDING,
                    tool_input=event.tool_input,
                ),
            )
        elif isinstance(event, ToolResult):
            logger.debug(
                "Tool call %s returned (error=%s)", event.tool_call_id, event.is_error
            )
        elif isinstance(event, StreamFinished):
            if event.text.strip():
                state.assistant_text = event.text
            if event.reasoning.strip():
                state.reasoning_text = truncate(event.reasoning, MAX_REASONING_SUMMARY_CHARS)
        else:
            assert_never(event)

    async def _ensure_candidate(
        self,
        run: Run,
        base_scene: Scene,
        state: RuntimeState,
        executor: RunToolExecutor,
    ) -> None:
        """Replay the model's last tool call, then synthesize a fallback call.

        Raises NoCandidateProduced with the collected reasons when both fail.
        """
        reasons = []

        if state.latest_tool_call is not None:
            logger.info(
                "Replaying %s (%s) for run %s",
                state.latest_tool_call.tool_name.value,
                state.latest_tool_call.tool_call_id,
                run.run_id[:12],
            )
            replayed = await executor(
                state.latest_tool_call.tool_name, state.latest_tool_call.tool_call_id
            )
            if isinstance(replayed, ToolSuccess):
                return
            reasons.append(replayed.reason)

        fallback_tool = choose_fallback_tool(base_scene, run.prompt)
        logger.info("Falling back to %s for run %s", fallback_tool.value, run.run_id[:12])
        fallback = await executor(fallback_tool, f"fallback_{uuid.uuid4().hex}")
        if isinstance(fallback, ToolSuccess):
            return

        reasons.append(fallback.reason)
        raise NoCandidateProduced(
            truncate(
                f"No diagram change was produced: {join_failure_reasons(reasons)}",
                MAX_FAILURE_CHARS,
            )
        )

    async def _transition(
        self,
        run: Run,
        state: RuntimeState,
        status: RunStatus,
        error: Optional[str] = None,
        applied_scene_version: Optional[int] = None,
        finished: bool = False,
        content_override: Optional[str] = None,
    ) -> bool:
        """Patch the run and its assistant reply together.

        Returns False when the run was already stopped by a stop request.
        """
        run_values: dict = {"status": status}
        assistant_values: dict = {
            "status": status,
            "content": content_override if content_override is not None else state.assistant_text,
        }
        if state.reasoning_text:
            assistant_values["reasoning_summary"] = state.reasoning_text
        if error is not None:
            run_values["error"] = error
            assistant_values["error"] = error
        if applied_scene_version is not None:
            run_values["applied_scene_version"] = applied_scene_version
        if finished:
            run_values["finished_at"] = now_ms()

        return await run_ledger.apply_transition(
            run, RunPatch(**run_values), AssistantPatch(**assistant_values)
        )
