"""Chat module -- the research assistant conversation.

Relays a conversation to the hosted ai-chat function, which grounds its
answer in the user's notes, research items, Notion pages and the web, and
streams the reply back with its reasoning kept apart from the answer.
"""
