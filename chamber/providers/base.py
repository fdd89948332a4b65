"""Abstract base for all generative backends."""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field

from chamber.models import Attachment, GeneratedImage


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(self, provider_name: str, message: str) -> None:
        self.provider_name = provider_name
        super().__init__(f"[{provider_name}] {message}")


@dataclass
class StructuredReply:
    text: str
    links: list[str] = field(default_factory=list)   # grounding / citation URLs


class GenerativeProvider(ABC):
    """Abstract base for all generative backends.

    Only text and structured output are mandatory. Image generation and
    grounded search raise ProviderError unless a subclass supports them.
    """

    @abstractmethod
    def name(self) -> str:
        """Return the short provider name (e.g. 'gemini', 'claude')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the actual model identifier string."""
        ...

    @abstractmethod
    async def generate_text(self, prompt: str) -> str:
        """Return plain text for the prompt.

        Raises:
            ProviderError: On API failure, timeout, or empty response.
        """
        ...

    @abstractmethod
    async def generate_structured(
        self,
        prompt: str,
        schema: dict,
        attachments: Sequence[Attachment] = (),
    ) -> StructuredReply:
        """Return JSON text matching the given JSON schema.

        Args:
            prompt: The full prompt text to send.
            schema: JSON schema the reply must honour.
            attachments: Inline payloads to send alongside the prompt.

        Raises:
            ProviderError: On API failure, timeout, or empty response.
        """
        ...

    async def generate_image(self, prompt: str, *, aspect_ratio: str = "1:1") -> GeneratedImage:
        raise ProviderError(self.name(), "Image generation not supported")

    async def search(self, query: str, *, maps: bool = False) -> StructuredReply:
        raise ProviderError(self.name(), "Grounded search not supported")
