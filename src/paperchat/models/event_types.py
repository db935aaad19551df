"""
Event Type Constants

Centralized definitions for all event types dispatched on the paperchat event bus.
"""

# Chat message events
CHAT_MESSAGE_UPDATED = "CHAT_MESSAGE_UPDATED"
"""
Dispatched whenever a session's message list changes shape (message added,
removed, converted or switched to another version).

Payload:
    item_id (int): Item the session belongs to (0 for global chat)
    session_id (str): Identifier of the affected session
    messages (list[dict]): Serialized messages in session order
"""

CHAT_STREAMING_UPDATE = "CHAT_STREAMING_UPDATE"
"""
Dispatched for every chunk received while a response is streaming.

Payload:
    item_id (int): Item the session belongs to
    session_id (str): Identifier of the streaming session
    message_id (str): Identifier of the in-flight assistant message
    content (str): Full accumulated content so far
    chunk (str): The text delta that was just appended
"""

CHAT_REASONING_UPDATE = "CHAT_REASONING_UPDATE"
"""
Dispatched for every reasoning chunk received while a response is streaming.

Payload:
    item_id (int), session_id (str), message_id (str)
    reasoning_content (str): Full accumulated reasoning text so far
"""

CHAT_MESSAGE_COMPLETE = "CHAT_MESSAGE_COMPLETE"
"""
Dispatched when a generation finishes naturally or is aborted.

Payload:
    item_id (int), session_id (str), message_id (str)
    aborted (bool): True when the user cancelled the request
"""

CHAT_ERROR = "CHAT_ERROR"
"""
Dispatched when a generation fails with anything other than an abort.

Payload:
    item_id (int), session_id (str)
    message (str): Error text shown to the user
    error_type (str): Exception class name
"""

CHAT_PDF_ATTACHED = "CHAT_PDF_ATTACHED"
"""
Dispatched the first time a document's text is folded into a session.

Payload:
    item_id (int), session_id (str)
"""

CHAT_SESSION_CHANGED = "CHAT_SESSION_CHANGED"
"""
Dispatched when the active session of an item changes (new, switched, deleted).

Payload:
    item_id (int)
    session_id (str | None): Newly active session
"""

CHAT_TITLE_UPDATED = "CHAT_TITLE_UPDATED"
"""
Dispatched once when a session receives its generated title.

Payload:
    item_id (int), session_id (str), title (str)
"""

# Provider events
PROVIDER_SELECTION_CHANGED = "PROVIDER_SELECTION_CHANGED"
"""
Dispatched whenever the active provider or selected model changes.

Payload:
    provider_id (str)
    model_id (str)
"""
