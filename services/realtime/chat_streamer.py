"""Streaming chat generation on the OpenAI Responses API."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

from openai import AsyncOpenAI

from models.message_record import MessageRecord
from services.image_normalizer import ImageNormalizer, data_url
from services.realtime.prompts import build_chat_input, build_vision_input
from services.realtime.response_parser import extract_text, extract_usage

LOGGER = logging.getLogger(__name__)

TEXT_DELTA = "response.output_text.delta"


@dataclass
class ChatPrompt:
	"""Everything one generation needs."""

	model: str
	content: str
	history: List[MessageRecord] = field(default_factory=list)
	images: List[str] = field(default_factory=list)
	vision_model: Optional[str] = None
	max_output_tokens: int = 2000


@dataclass
class GenerationChunk:
	"""A streamed token, or the final chunk carrying usage."""

	token: str = ""
	done: bool = False
	usage: Dict[str, Optional[int]] = field(default_factory=dict)


class InferenceBackend(Protocol):
	def generate(self, prompt: ChatPrompt) -> AsyncIterator[GenerationChunk]:
		...


class OpenAIChatStreamer:
	"""Stream answers token by token, describing images first when a vision model is set."""

	def __init__(self, client: AsyncOpenAI, normalizer: Optional[ImageNormalizer] = None) -> None:
		if client is None:
			raise ValueError("AsyncOpenAI client is required.")
		self.client = client
		self.normalizer = normalizer if normalizer is not None else ImageNormalizer()

	async def describe_images(self, content: str, image_urls: List[str], vision_model: str) -> str:
		"""Return a text description of the images from the vision model."""
		response = await self.client.responses.create(
			model=vision_model,
			input=build_vision_input(content, image_urls),
			max_output_tokens=800,
		)
		description = extract_text(response).strip()
		LOGGER.info("Vision model %s described %d image(s)", vision_model, len(image_urls))
		return description

	async def generate(self, prompt: ChatPrompt) -> AsyncIterator[GenerationChunk]:
		"""Yield token chunks, then one final chunk with usage.

		Args:
			prompt: Model, user text, prior turns and optional images.
		"""
		image_urls = [data_url(await asyncio.to_thread(self.normalizer.normalize, image)) for image in prompt.images]
		image_description = None
		if image_urls and prompt.vision_model:
			image_description = await self.describe_images(prompt.content, image_urls, prompt.vision_model)
			image_urls = []

		inputs = build_chat_input(
			prompt.history,
			prompt.content,
			image_urls=image_urls,
			image_description=image_description,
		)
		async with self.client.responses.stream(
			model=prompt.model,
			input=inputs,
			max_output_tokens=prompt.max_output_tokens,
		) as stream:
			async for event in stream:
				event_type = getattr(event, "type", None)
				if event_type == TEXT_DELTA:
					delta = getattr(event, "delta", "")
					if delta:
						yield GenerationChunk(token=delta)
				elif event_type == "error":
					raise RuntimeError(getattr(event, "message", None) or "Model stream failed")
			getter = getattr(stream, "get_final_response", None)
			response: Any = await getter() if getter else getattr(stream, "response", None)

		yield GenerationChunk(done=True, usage=extract_usage(response) if response is not None else {})
