"""
Reasoning gateway: one normalized request/response over interchangeable providers.

Providers: openai, anthropic, gemini, deepseek, openrouter, groq, and a local LiteLLM proxy.
"""
