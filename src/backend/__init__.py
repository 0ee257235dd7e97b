"""
Agent Workbench - Test-run relay for user-defined AI agents
===========================================================

FastAPI backend that runs ad-hoc or stored agent configurations against an
OpenAI-compatible chat completion API and relays the answer to the browser.

Key Features:
    - **Streaming Relay**: Newline-delimited JSON chunks with idle and total deadlines
    - **Non-Streaming Runs**: Single completion with bounded retry on transient failures
    - **Credential Resolution**: Per-user stored API key, falling back to the server key
    - **Rate Limiting**: Fixed-window admission per user or per client address
    - **Bounded Caches**: TTL caches with memory budgets and pluggable eviction
    - **Usage Accounting**: Reported or estimated token usage per run
    - **Enterprise Logging**: Structured JSON logs with request correlation

Modules:
    api: FastAPI routes, services, and middleware
    core: Settings and configuration constants
    models: Pydantic models for API requests, responses and errors
    utils: Logging, caching, metrics, HTTP clients, stream codec, database helpers
    integrations: Completion providers and upstream error classification

Architecture:
    Requests pass through request-context, auth and rate-limit middleware before
    reaching the agent routes. AgentTestService resolves configuration and
    credentials, calls the completion provider and records usage. PostgreSQL
    persistence is optional; without DATABASE_URL an in-memory store is used.
"""
