from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any, Literal, Protocol

from claude_agent_sdk import ClaudeAgentOptions, query
from claude_agent_sdk.types import AssistantMessage, ResultMessage, TextBlock

from agent_scheduler.config import Settings
from agent_scheduler.models import ScheduledJob
from agent_scheduler.notifications import PushNotifier

logger = logging.getLogger(__name__)

_PROMPT_PREVIEW_LIMIT = 100


@dataclass(frozen=True)
class ExecutionResult:
    status: Literal["ok", "error"]
    error: str | None = None
    text: str | None = None


class JobExecutor(Protocol):
    async def execute(self, job: ScheduledJob) -> ExecutionResult: ...


async def _single_prompt(prompt: str) -> AsyncIterator[dict[str, Any]]:
    yield {
        "type": "user",
        "message": {"role": "user", "content": [{"type": "text", "text": prompt}]},
        "parent_tool_use_id": None,
        "session_id": None,
    }


async def default_backend(*, prompt: str, options: ClaudeAgentOptions) -> AsyncIterator[Any]:
    async for message in query(prompt=_single_prompt(prompt), options=options):
        yield message


@dataclass
class _RunOutput:
    text: str
    error: str | None


def _preview(prompt: str) -> str:
    if len(prompt) > _PROMPT_PREVIEW_LIMIT:
        return prompt[:_PROMPT_PREVIEW_LIMIT] + "..."
    return prompt


class AgentJobExecutor:
    """Runs a job's prompt through the agent SDK and reports back to its owner."""

    def __init__(
        self,
        *,
        settings: Settings,
        backend: Callable[..., AsyncIterator[Any]] = default_backend,
        notifier: PushNotifier | None = None,
    ) -> None:
        self._settings = settings
        self._backend = backend
        self._notifier = notifier or PushNotifier(
            base_url=settings.push_gateway_base_url,
            secret=settings.push_secret,
        )

    async def execute(self, job: ScheduledJob) -> ExecutionResult:
        # Notification results are discarded on purpose: delivery never
        # decides the outcome of a run.
        _ = await self._notifier.send(
            owner_id=job.owner_id,
            job_id=job.id,
            text=f"Running scheduled task: {job.name}\nPrompt: {_preview(job.prompt)}",
            event="started",
        )

        try:
            output = await asyncio.wait_for(
                self._run(job),
                timeout=self._settings.job_timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = f"Timed out after {self._settings.job_timeout_seconds:g}s"
            return await self._fail(job, error)
        except Exception as exc:
            logger.exception("Scheduled job %s failed", job.id)
            return await self._fail(job, str(exc) or type(exc).__name__)

        text = output.text.strip() or "(no output)"
        _ = await self._notifier.send(owner_id=job.owner_id, job_id=job.id, text=text, event="finished")

        if output.error:
            return ExecutionResult(status="error", error=output.error, text=text)
        return ExecutionResult(status="ok", text=text)

    async def _fail(self, job: ScheduledJob, error: str) -> ExecutionResult:
        _ = await self._notifier.send(
            owner_id=job.owner_id,
            job_id=job.id,
            text=f'Scheduled task "{job.name}" failed: {error}',
            event="failed",
        )
        return ExecutionResult(status="error", error=error)

    async def _run(self, job: ScheduledJob) -> _RunOutput:
        chunks: list[str] = []
        result_text: str | None = None
        error: str | None = None

        async for message in self._backend(prompt=job.prompt, options=self._build_options(job)):
            if isinstance(message, AssistantMessage):
                for block in message.content:
                    if isinstance(block, TextBlock) and block.text:
                        chunks.append(block.text)
            elif isinstance(message, ResultMessage):
                if message.result:
                    result_text = message.result
                if message.is_error:
                    error = message.result or f"Agent run ended with {message.subtype}"

        text = result_text if result_text is not None else "\n".join(chunks)
        return _RunOutput(text=text, error=error)

    def _build_options(self, job: ScheduledJob) -> ClaudeAgentOptions:
        kwargs: dict[str, Any] = {"cwd": job.work_dir}
        if self._settings.claude_model:
            kwargs["model"] = self._settings.claude_model
        if self._settings.permission_mode:
            kwargs["permission_mode"] = self._settings.permission_mode
        return ClaudeAgentOptions(**kwargs)
