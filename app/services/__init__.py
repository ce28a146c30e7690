"""
SERVICES PACKAGE
=================

Business logic lives here. The API layer (app.main) calls these services;
they don't handle HTTP routing, only chat flow, tool calls and upstream clients.

MODULES:
    chat_service       - One turn end to end: token check, history, loop, persistence, usage
    orchestrator       - The model <-> tool loop (rounds, de-duplication, forced text, fallback)
    tools              - Tool declarations and executors (find/create/edit content)
    formatter          - Light markup -> rich-text HTML -> plain text
    cache              - TTL cache and per-round memo
    conversation_store - In-memory conversation histories with trimming
    persistence        - JSON transcript files
    groq_service       - Completion backend (ChatGroq, round-robin keys)
    content_client     - Content service HTTP client
    access_gate        - Quota check and usage decrement
"""
