from workgraph.executors.agent import AgentExecutor
from workgraph.executors.base import ExecutorError, ImplementationExecutor
from workgraph.executors.command import CommandExecutor

__all__ = ["AgentExecutor", "CommandExecutor", "ExecutorError", "ImplementationExecutor"]
