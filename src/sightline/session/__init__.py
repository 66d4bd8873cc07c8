"""
Session management — per-connection state and control.

Key components:
- ContextStore / ConversationContext: in-memory correlation state per connection
- sightline.session.machine.Session: the connection state machine (heartbeat,
  dispatch, combined analysis, chat)
"""

from sightline.session.context import ContextStore, ConversationContext

__all__ = [
    "ContextStore",
    "ConversationContext",
]
