"""
Template Drafting Assistant

OpenAI-powered helper that drafts certificate HTML templates from an
operator's description. Used only by the authoring endpoint; certificate
generation and campaign dispatch never call it.
"""

import asyncio
import os
import re
from typing import List, Optional
from dataclasses import dataclass, field
from enum import Enum

# OpenAI import
from openai import AsyncOpenAI

from .substitution import detect_fields, placeholder


class DraftStatus(Enum):
    """Status of a template drafting operation"""
    SUCCESS = "success"
    FAILED = "failed"
    API_ERROR = "api_error"
    QUOTA_EXCEEDED = "quota_exceeded"
    INVALID_INPUT = "invalid_input"


@dataclass
class DraftResult:
    """Container for template drafting results"""
    status: DraftStatus
    document: Optional[str] = None
    detected_fields: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    tokens_used: int = 0
    generation_time_seconds: float = 0.0
    model_used: Optional[str] = None


_CODE_FENCE = re.compile(r"^```(?:html)?\s*|\s*```$", re.IGNORECASE)


def strip_code_fence(text: str) -> str:
    """Remove a surrounding markdown code fence from a model reply"""
    return _CODE_FENCE.sub("", text.strip()).strip()


class TemplateDraftAssistant:
    """
    Drafts HTML certificate templates with {{field}} placeholders
    """

    def __init__(self):
        # OpenAI Configuration
        self.api_key = os.getenv("OPENAI_API_KEY")
        self.model = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        self.max_tokens = int(os.getenv("OPENAI_MAX_TOKENS", "2000"))
        self.temperature = float(os.getenv("OPENAI_TEMPERATURE", "0.7"))
        self.max_retries = int(os.getenv("AI_MAX_RETRIES", "2"))

        # Initialize OpenAI client
        self._client = None
        if self.api_key:
            self._client = AsyncOpenAI(api_key=self.api_key)

    def validate_configuration(self) -> tuple[bool, Optional[str]]:
        """
        Validate assistant configuration

        Returns:
            tuple: (is_valid, error_message)
        """
        if not self.api_key:
            return False, "OpenAI API key not configured (OPENAI_API_KEY environment variable)"

        if not self._client:
            return False, "OpenAI client not initialized"

        if self.max_tokens <= 0:
            return False, f"Invalid max_tokens configuration: {self.max_tokens}"

        if not (0.0 <= self.temperature <= 2.0):
            return False, f"Invalid temperature configuration: {self.temperature}"

        return True, None

    def build_prompt(self, description: str, fields: List[str]) -> str:
        """
        Build the drafting prompt

        Args:
            description: What the certificate is for (course, event, style)
            fields: Dataset columns the template may reference

        Returns:
            str: Prompt for the chat completion
        """
        if fields:
            field_lines = "\n".join(f"- {placeholder(name)}" for name in fields)
        else:
            field_lines = f"- {placeholder('nome')}"

        prompt = f"""
Design a printable certificate as a single self-contained HTML document.

CERTIFICATE DESCRIPTION:
{description}

AVAILABLE PLACEHOLDERS (use them verbatim, including the double braces):
{field_lines}

GUIDELINES:
1. Use inline CSS only, no external assets or scripts
2. Landscape A4 layout
3. Put the recipient's name in a prominent heading
4. Do not invent placeholders that are not listed
5. Return only the HTML document, no explanations
"""
        return prompt.strip()

    async def draft_template(self, description: str, fields: Optional[List[str]] = None) -> DraftResult:
        """
        Draft an HTML template

        Args:
            description: Operator description of the certificate
            fields: Dataset columns to expose as placeholders

        Returns:
            DraftResult: Drafted document and metadata
        """
        start_time = asyncio.get_event_loop().time()

        if not (description or "").strip():
            return DraftResult(status=DraftStatus.INVALID_INPUT, error_message="Description is required")

        is_valid, error_msg = self.validate_configuration()
        if not is_valid:
            return DraftResult(
                status=DraftStatus.FAILED,
                error_message=f"Configuration error: {error_msg}",
                generation_time_seconds=asyncio.get_event_loop().time() - start_time
            )

        prompt = self.build_prompt(description, fields or [])

        for attempt in range(self.max_retries + 1):
            try:
                if attempt > 0:
                    await asyncio.sleep(1.0)

                document, tokens_used = await self._call_openai_api(prompt)
                return DraftResult(
                    status=DraftStatus.SUCCESS,
                    document=document,
                    detected_fields=detect_fields(document),
                    tokens_used=tokens_used,
                    generation_time_seconds=asyncio.get_event_loop().time() - start_time,
                    model_used=self.model
                )

            except Exception as api_error:
                if attempt == self.max_retries:
                    if "rate limit" in str(api_error).lower():
                        status = DraftStatus.QUOTA_EXCEEDED
                    else:
                        status = DraftStatus.API_ERROR

                    return DraftResult(
                        status=status,
                        error_message=f"API error after {self.max_retries + 1} attempts: {str(api_error)}",
                        generation_time_seconds=asyncio.get_event_loop().time() - start_time
                    )

    async def _call_openai_api(self, prompt: str) -> tuple[str, int]:
        """
        Make API call to OpenAI

        Returns:
            tuple: (html_document, tokens_used)
        """
        if not self._client:
            raise ValueError("OpenAI client not initialized")

        response = await self._client.chat.completions.create(
            model=self.model,
            messages=[
                {
                    "role": "system",
                    "content": "You are a designer who writes clean, printable HTML certificates."
                },
                {
                    "role": "user",
                    "content": prompt
                }
            ],
            max_tokens=self.max_tokens,
            temperature=self.temperature
        )

        if not response.choices:
            raise ValueError("No response generated from OpenAI")

        content = response.choices[0].message.content or ""
        tokens_used = response.usage.total_tokens if response.usage else 0
        return strip_code_fence(content), tokens_used


async def draft_certificate_template(description: str, fields: Optional[List[str]] = None) -> DraftResult:
    """Convenience function to draft a template"""
    assistant = TemplateDraftAssistant()
    return await assistant.draft_template(description, fields)


def validate_ai_configuration() -> tuple[bool, Optional[str]]:
    """
    Convenience function to validate AI configuration

    Returns:
        tuple: (is_valid, error_message)
    """
    assistant = TemplateDraftAssistant()
    return assistant.validate_configuration()
