from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

TOOL_PREFIX = "tool:"


class ToolCommandError(ValueError):
    """Raised for a malformed ``tool:`` command string."""


class ToolOperation(str, Enum):
    READ = "read"
    SEARCH = "search"
    WRITE = "write"
    CREATE_FILE = "create-file"
    CREATE_FOLDER = "create-folder"

    @property
    def mutating(self) -> bool:
        return self in {ToolOperation.WRITE, ToolOperation.CREATE_FILE, ToolOperation.CREATE_FOLDER}


MINIMUM_ARGUMENTS: dict[ToolOperation, int] = {
    ToolOperation.READ: 1,
    ToolOperation.SEARCH: 1,
    ToolOperation.WRITE: 2,
    ToolOperation.CREATE_FILE: 1,
    ToolOperation.CREATE_FOLDER: 1,
}

USAGE = (
    "Usage: tool:read|<path>, tool:search|<root>|<pattern>, tool:write|<path>|<content>, "
    "tool:create-file|<path>|<content>, tool:create-folder|<path>"
)


def is_tool_details(details: str | None) -> bool:
    return bool(details) and details.strip().lower().startswith(TOOL_PREFIX)


@dataclass(slots=True, frozen=True)
class ToolCommand:
    operation: ToolOperation
    path: str
    pattern: str = "*"
    content: str = ""

    @classmethod
    def parse(cls, details: str | None) -> ToolCommand | None:
        """Parse ``tool:<op>|<arg>...``; ``None`` for free-form details."""
        if not is_tool_details(details):
            return None
        body = details.lstrip()[len(TOOL_PREFIX) :]
        op_name, _, rest = body.partition("|")
        try:
            operation = ToolOperation(op_name.strip().lower())
        except ValueError:
            raise ToolCommandError(f"Unknown tool operation '{op_name.strip()}'. {USAGE}") from None

        # Content may itself contain "|", so only the path is split off.
        path, separator, remainder = rest.partition("|")
        arguments = 0
        if path.strip():
            arguments = 2 if separator else 1
        if arguments < MINIMUM_ARGUMENTS[operation]:
            raise ToolCommandError(
                f"Tool operation '{operation.value}' requires at least "
                f"{MINIMUM_ARGUMENTS[operation]} argument(s). {USAGE}"
            )

        path = path.strip()
        if operation is ToolOperation.SEARCH:
            return cls(operation, path, pattern=remainder.strip() or "*")
        if operation in {ToolOperation.WRITE, ToolOperation.CREATE_FILE}:
            return cls(operation, path, content=remainder)
        return cls(operation, path)

    def format(self) -> str:
        if self.operation is ToolOperation.SEARCH:
            return f"{TOOL_PREFIX}{self.operation.value}|{self.path}|{self.pattern}"
        if self.operation in {ToolOperation.WRITE, ToolOperation.CREATE_FILE}:
            return f"{TOOL_PREFIX}{self.operation.value}|{self.path}|{self.content}"
        return f"{TOOL_PREFIX}{self.operation.value}|{self.path}"
