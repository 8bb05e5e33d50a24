"""
Conversation Flow Engine.

Flows are node-and-edge graphs drawn in the visual designer and
interpreted turn by turn against a live session:

  - models:    closed union of node kinds, edges, flows
  - graph:     graph index + router (shared, read-only per flow version)
  - variables: {name} substitution over session variables
  - handlers:  one executor per node kind, collaborators injected
  - runner:    the per-turn suspend/resume loop
  - registry:  load, validate and resolve published flows
"""
from flows.models import Edge, Flow, FlowNode, FlowVariable, NodeKind
from flows.graph import GraphIndex, RoutingError
from flows.variables import resolve, to_display_text
from flows.handlers import NodeHandlers
from flows.runner import SessionRunner, TurnAborted
from flows.registry import FlowRegistry, FlowValidationError
