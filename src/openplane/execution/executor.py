from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Protocol

from openplane.backends.base import ReasoningBackend
from openplane.config import OpenPlaneConfig
from openplane.models import PlanStep
from openplane.sandbox.commands import ToolCommand
from openplane.sandbox.files import FileToolService
from openplane.sandbox.policy import NetworkPolicy
from openplane.state.stores import ModelSelectionStore, StateStores, WorkspacePolicyStore
from openplane.worker.client import WorkerToolRunner, default_worker_command

logger = logging.getLogger(__name__)


class ToolRunner(Protocol):
    async def run(self, step: PlanStep, command: ToolCommand, workspace_id: str) -> str: ...


class LocalToolRunner:
    """Runs tool commands in this process against the stored workspace policy."""

    def __init__(
        self, policy_store: WorkspacePolicyStore, tools: FileToolService | None = None
    ) -> None:
        self.policy_store = policy_store
        self.tools = tools or FileToolService()

    async def run(self, step: PlanStep, command: ToolCommand, workspace_id: str) -> str:
        policy = self.policy_store.get(workspace_id)
        return await asyncio.to_thread(self.tools.execute, command, policy)

    async def close(self) -> None:
        return None


def build_reasoning_prompt(step: PlanStep) -> str:
    details = (step.details or "").strip()
    if not details:
        return step.title
    return f"Plan step: {step.title}\n\n{details}"


class StepExecutor:
    """Routes a plan step to the tool runner or to the reasoning backend."""

    def __init__(
        self,
        tool_runner: ToolRunner,
        backend: ReasoningBackend,
        policy_store: WorkspacePolicyStore,
        network_policy: NetworkPolicy | None = None,
        model: str | None = None,
        system_prompt: str = "",
        model_selections: ModelSelectionStore | None = None,
    ) -> None:
        self.tool_runner = tool_runner
        self.backend = backend
        self.policy_store = policy_store
        self.network_policy = network_policy or NetworkPolicy()
        self.model = model
        self.system_prompt = system_prompt
        self.model_selections = model_selections

    def model_for(self, workspace_id: str) -> str | None:
        """Workspace selection first, then the configured backend model."""
        if self.model_selections is not None:
            selected = self.model_selections.get(workspace_id)
            if selected:
                return selected
        return self.model

    async def execute_step(self, step: PlanStep, workspace_id: str) -> str:
        # A malformed tool command raises ToolCommandError and fails the step.
        command = ToolCommand.parse(step.details)

        if command is not None:
            logger.debug("Dispatching %s for step %s", command.operation.value, step.id)
            return await self.tool_runner.run(step, command, workspace_id)

        hosts = self.backend.network_hosts()
        if hosts:
            self.network_policy.ensure_hosts_allowed(hosts, self.policy_store.get(workspace_id))

        context: dict[str, str] = {"step_title": step.title}
        model = self.model_for(workspace_id)
        if model:
            context["model"] = model
        return await self.backend.complete(
            self.system_prompt, build_reasoning_prompt(step), context
        )

    async def close(self) -> None:
        close = getattr(self.tool_runner, "close", None)
        if close is not None:
            await close()


def build_tool_runner(
    config: OpenPlaneConfig, stores: StateStores, working_directory: Path | None = None
) -> ToolRunner:
    if config.execution.step_runner == "worker":
        return WorkerToolRunner(
            stores.policies.path,
            command=default_worker_command(config.worker.python or None),
            working_directory=working_directory,
            log_level=config.worker.log_level,
            request_timeout_seconds=config.worker.request_timeout_seconds,
            stream_limit=config.worker.stream_limit_bytes,
        )
    return LocalToolRunner(stores.policies, FileToolService(base_directory=working_directory))


def build_step_executor(
    config: OpenPlaneConfig,
    stores: StateStores,
    backend: ReasoningBackend,
    working_directory: Path | None = None,
) -> StepExecutor:
    return StepExecutor(
        tool_runner=build_tool_runner(config, stores, working_directory),
        backend=backend,
        policy_store=stores.policies,
        model=config.backend.model,
        system_prompt=config.execution.system_prompt,
        model_selections=stores.models,
    )
