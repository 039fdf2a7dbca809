# Answer generation via the Anthropic API.
# The retrieved mechanics context is appended to a fixed system prompt; the
# conversation history and the new question go in as messages.

import logging
import time
from typing import Iterator, List, Optional

import anthropic

from backend import config
from backend.errors import ProviderError
from backend.models import ChatMessage

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = """You are Scholar, an expert assistant helping Destiny 2 fireteams during Day 1 contest raid and dungeon runs. Your job is to ACTIVELY SOLVE MECHANICS with the team, grounded in the historical mechanics context provided below.

When players describe what they are seeing:
1. ANALYZE the description and identify which known mechanics it resembles.
2. ASK short clarifying questions when the description is ambiguous.
3. SUGGEST concrete solutions based on similar historical mechanics.
4. BREAK complex mechanics into steps and tell the team what to try next.

DUNGEON CONTEXT:
- Dungeons are built for 3 players and their mechanics are designed to be soloable: each player can complete an assigned task independently.
- Contest mode puzzle encounters have strict time limits; boss encounters are typically limited to 3 damage phases.

CRITICAL RULES — THESE OVERRIDE EVERYTHING ELSE:
1. ONLY use information from the mechanics context below. Do not use mechanics, enemy names or encounter names from your training data.
2. Provide ALL relevant information in the context. Never say you lack details if the context has any.
3. If the player asks about a specific raid or dungeon, ONLY use mechanics whose "Dungeon/Raid:" field matches it. Never mix mechanics from different dungeons.
4. Only refer to encounters by the exact names in the "Encounter:" fields.
5. Understand encounter positions:
   * "First encounter" = the encounter with order 1 (opening, traversal or boss)
   * "First boss" = the first encounter of type boss (may not be order 1)
   * "Second boss" = the second boss-type encounter
   * "Final boss" = the boss-type encounter with the highest order
   The context has already been filtered to the relevant encounter(s).
6. Answer directly. Never write "based on the context" or "according to the information provided".
7. If something is genuinely not in the context, say so plainly: "I don't have information about X."

ENCOUNTER FLOW is the most important information. Flow mechanics are listed first in the context; lead with them, since they give the big picture that makes the individual mechanics make sense.

Be concise but thorough — scouts need quick answers mid-run. Highlight contest mode notes when relevant.

Context from historical mechanics:
{context}"""


def build_messages(question: str, chat_history: Optional[List[ChatMessage]] = None) -> list:
    messages = []
    for msg in chat_history or []:
        messages.append({"role": msg.role, "content": msg.content})
    messages.append({"role": "user", "content": question})
    return messages


class ResponseGenerator:
    """
    Claude-backed answer generator.

    generate() returns the full answer; stream() yields text chunks as they
    arrive. A stream is finite and cannot be restarted; call stream() again
    to regenerate. Closing the generator early (client disconnect) exits the
    SDK stream context and abandons the in-flight request.
    """

    def __init__(
        self,
        api_key: Optional[str] = config.ANTHROPIC_API_KEY,
        model: str = config.CHAT_MODEL,
        max_tokens: int = config.CHAT_MAX_TOKENS,
        client=None,
    ):
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = anthropic.Anthropic(api_key=self.api_key)
        return self._client

    def generate(self, question: str, context: str, chat_history: Optional[List[ChatMessage]] = None) -> str:
        start = time.monotonic()
        try:
            response = self._get_client().messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=SYSTEM_PROMPT.format(context=context),
                messages=build_messages(question, chat_history),
            )
        except Exception as e:
            raise ProviderError(f"Failed to generate response: {e}") from e

        logger.info(f"[TIMING] generate={time.monotonic() - start:.2f}s model={self.model}")
        block = response.content[0]
        if getattr(block, "type", "text") != "text":
            raise ProviderError("Unexpected response format from Claude API")
        return block.text

    def stream(
        self,
        question: str,
        context: str,
        chat_history: Optional[List[ChatMessage]] = None,
    ) -> Iterator[str]:
        start = time.monotonic()
        try:
            with self._get_client().messages.stream(
                model=self.model,
                max_tokens=self.max_tokens,
                system=SYSTEM_PROMPT.format(context=context),
                messages=build_messages(question, chat_history),
            ) as stream:
                first_token = True
                for text in stream.text_stream:
                    if first_token:
                        logger.info(f"[TIMING] time_to_first_token={time.monotonic() - start:.2f}s")
                        first_token = False
                    yield text
        except GeneratorExit:
            logger.info("Client went away mid-stream; generation abandoned")
            raise
        except Exception as e:
            raise ProviderError(f"Failed to stream response: {e}") from e
