from openplane.execution.executor import (
    LocalToolRunner,
    StepExecutor,
    ToolRunner,
    build_reasoning_prompt,
    build_step_executor,
    build_tool_runner,
)

__all__ = [
    "LocalToolRunner",
    "StepExecutor",
    "ToolRunner",
    "build_reasoning_prompt",
    "build_step_executor",
    "build_tool_runner",
]
