"""
State Machine Module for Chatbot Conversation Flows
"""
from crmbot.state_machine.states import SessionStatus
from crmbot.state_machine.graph import FlowGraph
from crmbot.state_machine.nodes import NodeKind

__all__ = ["SessionStatus", "FlowGraph", "NodeKind"]
