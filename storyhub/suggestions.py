import logging
from typing import Optional

from google import genai
from google.genai import types

from .errors import ValidationError
from .models import Suggestions

logger = logging.getLogger(__name__)

MAX_SUGGESTIONS = 5
MAX_CONTENT_CHARS = 2000

MOCK_SUGGESTIONS = Suggestions(
    titles=[
        "Mock Title 1: The Rise of AI",
        "Mock Title 2: Exploring React",
        "Mock Title 3: Tailwind for Beginners",
    ],
    hashtags=["Mock", "AI", "React", "WebDev", "JavaScript"],
)

PROMPT = (
    "Based on the following blog content, generate 5 creative and engaging blog post "
    "titles and 5 relevant hashtags (without the # symbol).\n\nContent: \"{content}...\""
)


class TextSuggestionService:
    """Title and hashtag ideas for a draft, backed by Gemini.

    Without an API key a fixed mock answer is returned. Failures of the
    model call are logged and yield empty suggestions; only an empty draft
    is rejected.
    """

    def __init__(self, api_key: Optional[str] = None, model: str = "gemini-2.5-flash", client=None):
        self.model = model
        self.client = client
        if self.client is None and api_key:
            self.client = genai.Client(api_key=api_key)
        if self.client is None:
            logger.warning("Gemini API key not found; title/hashtag suggestions will be mocked")

    @property
    def enabled(self) -> bool:
        return self.client is not None

    async def suggest(self, content: str) -> Suggestions:
        if not (content or "").strip():
            raise ValidationError("Please write some content first to generate suggestions.")
        if self.client is None:
            return MOCK_SUGGESTIONS.model_copy(deep=True)

        try:
            response = await self.client.aio.models.generate_content(
                model=self.model,
                contents=PROMPT.format(content=content[:MAX_CONTENT_CHARS]),
                config=types.GenerateContentConfig(
                    response_mime_type="application/json",
                    response_schema=Suggestions,
                ),
            )
            result = Suggestions.model_validate_json((response.text or "").strip())
        except Exception as e:
            logger.error("Error generating suggestions: %s", e)
            return Suggestions()

        return Suggestions(
            titles=[t.strip() for t in result.titles if t and t.strip()][:MAX_SUGGESTIONS],
            hashtags=[h.strip().lstrip("#") for h in result.hashtags if h and h.strip()][:MAX_SUGGESTIONS],
        )
