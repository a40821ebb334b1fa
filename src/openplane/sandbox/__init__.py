from openplane.sandbox.adapters import FileAdapter
from openplane.sandbox.commands import ToolCommand, ToolCommandError, ToolOperation
from openplane.sandbox.files import FileToolService
from openplane.sandbox.policy import AccessPolicy, NetworkPolicy, PolicyViolationError

__all__ = [
    "AccessPolicy",
    "FileAdapter",
    "FileToolService",
    "NetworkPolicy",
    "PolicyViolationError",
    "ToolCommand",
    "ToolCommandError",
    "ToolOperation",
]
