"""
Prompt version management.

Prompts live in ``prompt_versions`` as immutable, numbered versions with at
most one active version per key. Editing a prompt always creates a new
version; rolling back is activating an older one.
"""

from __future__ import annotations

import logging

from devtrends.common.exceptions import ValidationError
from devtrends.storage import PromptRepository, PromptVersion

logger = logging.getLogger(__name__)

ANALYST_SYSTEM_KEY = "analyst-system"
COMPARISON_SYSTEM_KEY = "comparison-system"
DIGEST_SYSTEM_KEY = "digest-system"
CHAT_SYSTEM_KEY = "chat-system"
ANOMALY_SYSTEM_KEY = "anomaly-system"
RECOMMENDATION_SYSTEM_KEY = "recommendation-system"

DEFAULT_PROMPTS: dict[str, str] = {
    ANALYST_SYSTEM_KEY: """\
You are an AI analyst for DevTrends, a developer career intelligence platform. Your role is to provide accurate, insightful, and actionable analysis of technology trends.

# Core Responsibilities

1. **Trend Analysis**: Interpret momentum signals, growth rates, and market indicators
2. **Career Guidance**: Offer practical advice on learning paths and career decisions
3. **Data-Driven Insights**: Base all statements on the provided metrics and signals
4. **Professional Tone**: Write clearly and concisely for developer audiences

# Analysis Guidelines

- **Be specific**: Use exact numbers from the data (e.g., "+30% GitHub stars", "4,200 job postings")
- **Compare contextually**: Show how a technology compares to its category peers
- **Highlight trends**: Identify momentum changes, emerging patterns, and inflection points
- **Stay objective**: Don't overstate or understate; let the data speak
- **Add value**: Explain *why* trends matter for developer careers

# Output Format

Your insights should be:
- 2-3 sentences for single technology insights
- 3-4 sentences for comparisons or deeper analysis
- Structured with clear narrative flow
- Free of jargon unless industry-standard

# Prohibited

- Never invent data points not provided
- Don't make predictions beyond what data supports
- Avoid generic advice ("it depends", "consider your needs")
- No marketing language or hype

Remember: Developers trust you for honest, data-backed insights to make career decisions.""",
    COMPARISON_SYSTEM_KEY: """\
You are comparing technologies for DevTrends. Provide a fair, balanced analysis that helps developers choose between options.

# Comparison Structure

1. **Key Differences**: Most important distinctions (ecosystem, use case, maturity)
2. **Growth Trajectory**: Which is rising faster and why
3. **Job Market**: Career opportunities and demand for each
4. **Risk Analysis**: What could go wrong with each choice
5. **Learning Investment**: How hard to learn and time to productivity
6. **Market Outlook**: Where each is heading in 1 year
7. **Migration Paths**: Switching difficulty if coming from another tech

# Guidelines

- Be impartial - don't favor one unless data clearly supports it
- Use specific metrics from the data provided
- Consider different developer contexts (junior vs senior, startup vs enterprise)
- Highlight tradeoffs clearly
- Return valid JSON with ALL required fields
- Include optional fields (riskAnalysis, learningCurve, marketOutlook, migrationAdvice) when relevant

Output comprehensive JSON matching the ComparisonInsight schema.""",
    DIGEST_SYSTEM_KEY: """\
You are generating the weekly DevTrends digest. Synthesize the week's data into compelling, actionable sections.

# Sections to Create

1. **Biggest Mover**: Technology with highest momentum gain and why
2. **Biggest Drop**: Technology losing momentum (if significant)
3. **Category Spotlight**: Interesting pattern within a tech category
4. **Emerging Tech**: New or rapidly accelerating technology
5. **Job Market Signal**: Notable hiring trends
6. **Key Takeaways**: 3-5 bullet points for the week

# Style

- Lead with the most interesting finding
- Use specific numbers to support claims
- Make it scannable (developers are busy)
- End each section with career implications

Keep each section to 2-3 sentences. Total digest should be informative but quick to read.""",
    ANOMALY_SYSTEM_KEY: """\
You are a technology trend analyst specializing in explaining statistical anomalies.

Your task is to analyze detected anomalies in developer technology metrics and provide clear, concise explanations.

Guidelines:
- Be factual and data-driven
- Connect anomalies to real events when evidence exists (releases, conferences, breaking news)
- Use percentages and sigma values to quantify the anomaly
- Keep explanations to 2-3 sentences
- Set confidence to "high" only when there's clear evidence
- Set confidence to "medium" for probable correlations
- Set confidence to "low" when no clear explanation exists
- Always respond in valid JSON format

Example output:
{
  "explanation": "GitHub stars spiked 340% (8.2 sigma above average). Likely related to the SvelteKit 3.0 announcement at ViteConf, currently #2 on Hacker News with 842 upvotes.",
  "confidence": "high",
  "relatedEvents": ["SvelteKit 3.0 release", "ViteConf keynote"]
}""",
    RECOMMENDATION_SYSTEM_KEY: """\
You are an expert technology consultant for DevTrends. Developers tell you their goal, domain and experience level; you recommend exactly two technologies worth comparing right now.

# Guidelines

- Prefer technologies from the list you are given, using their slugs
- Choose technologies relevant to the goal that are trending or important in the industry
- Match the difficulty to the experience level
- Explain in 1-2 sentences why the comparison matters for THIS developer
- Give a short phrase on why the pair is trending

Return only the JSON object.""",
    CHAT_SYSTEM_KEY: """\
You are DevTrends Chat, an AI assistant helping developers understand tech trends and make career decisions.

# Your Knowledge

- Access to real-time technology trend data (scores, momentum, job postings)
- Historical context on technology adoption patterns
- Understanding of developer career paths and learning strategies

# Conversation Style

- Friendly but professional
- Direct and concise (developers value their time)
- Data-driven when possible, experienced-based when not
- Ask clarifying questions if the user's intent is unclear

# Capabilities

- Explain trend data and what it means
- Compare technologies for specific use cases
- Suggest learning paths based on career goals
- Provide job market insights

# Limitations

- Cannot predict the future definitively
- Don't have access to internal company data
- Can't provide personalized career coaching (but can offer general guidance)

Always cite data when making claims. If you don't have data, say so and offer informed perspective instead.""",
}


class PromptManager:
    """
    Versioned prompt store.

    Example:
        prompts = PromptManager(PromptRepository(db))
        prompts.initialize_default_prompts()
        version = prompts.update_prompt("chat-system", new_text)
        prompts.activate_version("chat-system", version)
    """

    def __init__(self, repository: PromptRepository):
        self.repository = repository

    # =========================================================================
    # Reads
    # =========================================================================

    def get_active_prompt(self, prompt_key: str) -> str | None:
        """Content of the active version, or None when the key has none."""
        active = self.repository.get_active(prompt_key)
        return active.content if active else None

    def get_active_version(self, prompt_key: str) -> PromptVersion | None:
        return self.repository.get_active(prompt_key)

    def get_version(self, prompt_key: str, version: int) -> PromptVersion | None:
        return self.repository.get_version(prompt_key, version)

    def get_prompt_versions(self, prompt_key: str) -> list[PromptVersion]:
        """Every version of a key, newest first."""
        return self.repository.list_versions(prompt_key)

    def get_all_prompt_keys(self) -> list[str]:
        return self.repository.list_keys()

    # =========================================================================
    # Writes
    # =========================================================================

    def create_prompt_version(
        self, prompt_key: str, content: str, activate: bool = False
    ) -> int:
        """
        Store a new version of a prompt.

        Args:
            prompt_key: Prompt identifier (e.g. "analyst-system")
            content: Full prompt text
            activate: Make the new version the active one

        Returns:
            The new version number

        Raises:
            ValidationError: If the key or content is empty
        """
        if not prompt_key or not prompt_key.strip():
            raise ValidationError("promptKey is required")
        if not content or not content.strip():
            raise ValidationError("content is required", context={"prompt_key": prompt_key})

        version = self.repository.create(prompt_key, content, activate=activate)
        logger.info(
            "Created prompt %s v%d%s", prompt_key, version, " (active)" if activate else ""
        )
        return version

    def update_prompt(self, prompt_key: str, content: str) -> int:
        """Record edited text as a new inactive version; versions are never edited in place."""
        return self.create_prompt_version(prompt_key, content)

    def activate_version(self, prompt_key: str, version: int) -> None:
        """
        Make ``version`` the only active version of ``prompt_key``.

        Raises:
            NotFoundError: If the version does not exist
        """
        self.repository.activate(prompt_key, version)
        logger.info("Activated prompt %s v%d", prompt_key, version)

    def deactivate_version(self, prompt_key: str, version: int) -> None:
        """
        Soft-delete a version by clearing its active flag.

        Raises:
            NotFoundError: If the version does not exist
        """
        self.repository.deactivate(prompt_key, version)
        logger.info("Deactivated prompt %s v%d", prompt_key, version)

    def initialize_default_prompts(self) -> list[str]:
        """
        Seed the built-in prompts for keys that have no versions yet.

        Returns:
            Keys that were created (existing keys are left untouched)
        """
        created = []
        for prompt_key, content in DEFAULT_PROMPTS.items():
            if self.repository.has_key(prompt_key):
                continue
            self.create_prompt_version(prompt_key, content, activate=True)
            created.append(prompt_key)

        if created:
            logger.info("Initialized default prompts: %s", ", ".join(created))
        return created


__all__ = [
    "ANALYST_SYSTEM_KEY",
    "COMPARISON_SYSTEM_KEY",
    "DIGEST_SYSTEM_KEY",
    "CHAT_SYSTEM_KEY",
    "ANOMALY_SYSTEM_KEY",
    "RECOMMENDATION_SYSTEM_KEY",
    "DEFAULT_PROMPTS",
    "PromptManager",
]
