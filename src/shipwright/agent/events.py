"""Typed coding agent events and the transcript that accumulates them.

The agent SDK streams heterogeneous message objects. translate_messages()
turns that stream into a lazy sequence of three event types, and
AgentTranscript is the single consumer that derives the run's final
output, conversation token and cost from them.
"""

from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, List, Optional, Union

from claude_agent_sdk import AssistantMessage, ResultMessage, SystemMessage, TextBlock


@dataclass(frozen=True)
class SystemEvent:
    """Session metadata; the init event carries the session id."""

    subtype: str
    session_id: Optional[str] = None


@dataclass(frozen=True)
class AssistantTextEvent:
    """Text the agent produced in one assistant turn."""

    text: str


@dataclass(frozen=True)
class ResultEvent:
    """Terminal event of a run.

    Attributes:
        subtype: "success" or an error subtype such as "error_max_turns".
        is_error: Whether the run ended in error.
        result: Final result text, if any.
        session_id: Conversation token for resuming the session.
        cost_usd: Total cost of the run.
        num_turns: Turns the run used.
    """

    subtype: str
    is_error: bool
    result: Optional[str] = None
    session_id: Optional[str] = None
    cost_usd: float = 0.0
    num_turns: int = 0


AgentEvent = Union[SystemEvent, AssistantTextEvent, ResultEvent]


@dataclass
class AgentResult:
    """Outcome of one agent invocation.

    Attributes:
        success: Whether the run finished successfully.
        output: Final result text, or the last assistant text.
        conversation_token: Session id to resume from, if known.
        cost_usd: Spend for this invocation.
        num_turns: Turns used.
        error: Failure description when success is False.
        budget_exceeded: The run stopped at its turn or cost ceiling.
    """

    success: bool
    output: str = ""
    conversation_token: Optional[str] = None
    cost_usd: float = 0.0
    num_turns: int = 0
    error: Optional[str] = None
    budget_exceeded: bool = False


async def translate_messages(messages: AsyncIterable[Any]) -> AsyncIterator[AgentEvent]:
    """Map SDK messages to typed events, dropping the ones we do not use."""
    async for message in messages:
        if isinstance(message, SystemMessage):
            data = message.data or {}
            yield SystemEvent(subtype=message.subtype, session_id=data.get("session_id"))
        elif isinstance(message, AssistantMessage):
            text = "".join(
                block.text for block in message.content if isinstance(block, TextBlock)
            )
            if text:
                yield AssistantTextEvent(text=text)
        elif isinstance(message, ResultMessage):
            yield ResultEvent(
                subtype=message.subtype,
                is_error=bool(message.is_error),
                result=message.result,
                session_id=message.session_id,
                cost_usd=float(message.total_cost_usd or 0.0),
                num_turns=int(message.num_turns or 0),
            )


@dataclass
class AgentTranscript:
    """Accumulates the events of one run."""

    session_id: Optional[str] = None
    last_text: str = ""
    result: Optional[ResultEvent] = None
    texts: List[str] = field(default_factory=list)

    def consume(self, event: AgentEvent) -> None:
        if isinstance(event, SystemEvent):
            self.session_id = event.session_id or self.session_id
        elif isinstance(event, AssistantTextEvent):
            self.texts.append(event.text)
            self.last_text = event.text
        elif isinstance(event, ResultEvent):
            self.result = event
            self.session_id = event.session_id or self.session_id

    async def consume_all(self, events: AsyncIterable[AgentEvent]) -> "AgentTranscript":
        async for event in events:
            self.consume(event)
        return self

    @property
    def output(self) -> str:
        if self.result is not None and self.result.result:
            return self.result.result
        return self.last_text

    @property
    def cost_usd(self) -> float:
        return self.result.cost_usd if self.result is not None else 0.0

    def to_result(self, error: Optional[str] = None) -> AgentResult:
        """Build the AgentResult for this run.

        Args:
            error: Failure raised while streaming, if any; forces failure.
        """
        result = self.result
        budget_exceeded = bool(
            result is not None and result.subtype.startswith("error_max")
        )
        if error is None:
            if result is None:
                error = "Agent run ended without a result"
            elif result.is_error or result.subtype != "success":
                error = f"Agent run ended with {result.subtype}"
        return AgentResult(
            success=error is None,
            output=self.output,
            conversation_token=self.session_id,
            cost_usd=self.cost_usd,
            num_turns=result.num_turns if result is not None else 0,
            error=error,
            budget_exceeded=budget_exceeded,
        )
