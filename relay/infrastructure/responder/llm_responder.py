"""
Automated responder backed by a LangChain chat model.
"""

from typing import Optional

import structlog
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage

from relay.domain.errors import ResponderFailed

logger = structlog.get_logger(__name__)


def build_chat_model(api_key: Optional[str], model: str = "gpt-4o-mini") -> BaseChatModel:
    """Build the OpenAI chat model used for automated replies.

    Raises:
        ValueError: If no API key is configured.
    """
    from langchain_openai import ChatOpenAI

    if not api_key:
        raise ValueError("OPENAI_API_KEY is required for the automated responder")

    logger.info("Building OpenAI chat model", model=model)
    return ChatOpenAI(model=model, api_key=api_key)


class LLMResponder:
    """Generates a reply for a single user message"""

    def __init__(self, chat_model: BaseChatModel):
        self.chat_model = chat_model

    async def complete(self, text: str) -> str:
        """Return the model's reply to ``text``; any failure raises ResponderFailed"""

        logger.info("Generating automated reply", text_preview=text[:60])
        try:
            response = await self.chat_model.ainvoke([HumanMessage(content=text)])
        except Exception as e:
            raise ResponderFailed(str(e)) from e

        content = response.content if isinstance(response.content, str) else ""
        if not content.strip():
            raise ResponderFailed("Responder returned an empty reply")

        logger.info("Automated reply generated", reply_preview=content[:60])
        return content
