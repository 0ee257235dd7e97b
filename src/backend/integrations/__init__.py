"""
Integrations Module - External System Integrations
===================================================

Provides the boundary to the upstream chat completion API.

Modules:
    completion_provider: Provider protocol, OpenAI-backed and mock providers, factory
    errors: Upstream failure classification into a closed set of error kinds

Key Components:

Completion Providers (completion_provider.py):
    Uniform access to chat completions:
    - complete(): single response with normalized token usage
    - stream(): async iterator of text deltas, closed on early exit
    - MockCompletionProvider: deterministic output when mock mode is enabled

Error Classification (errors.py):
    Maps SDK and transport exceptions to CompletionErrorKind:
    - Credential failures surface with requires_credentials
    - Upstream rate limits and 5xx responses are marked retryable

Example:
    Streaming a completion:

        from integrations.completion_provider import CompletionRequest, ProviderFactory

        provider = ProviderFactory(client_pool)(api_key)
        request = CompletionRequest(system_prompt="You are terse.", user_message="Hi", model="gpt-4o")
        async for delta in provider.stream(request):
            ...

See Also:
    :mod:`api.services.agent_test_service`: Orchestrates providers for agent test runs
"""
