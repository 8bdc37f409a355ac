"""
DevTrends AI orchestration.

Turns business requests (summarise a technology, compare technologies,
answer a question) into reliable calls against interchangeable LLM
back-ends, with shared rate limits, retries, telemetry, versioned prompts
and A/B experiments judged from user feedback.
"""

__version__ = "0.1.0"
