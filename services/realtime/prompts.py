"""Prompt builders for chat generation and image description."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from models.message_record import MessageRecord


def chat_system_prompt() -> str:
	"""Return the assistant system prompt."""
	return (
		"You are a helpful, precise assistant. Answer in Markdown when formatting helps, "
		"keep answers focused on the question, and say so plainly when you are unsure."
	)


def vision_system_prompt() -> str:
	"""Return the system prompt for the image-description pass."""
	return (
		"Describe the attached images for another assistant that cannot see them. "
		"Cover visible text verbatim, objects, layout, charts and anything the user is likely asking about. "
		"Be factual and do not speculate beyond what is visible."
	)


def _message(role: str, content: Any) -> Dict[str, Any]:
	return {"type": "message", "role": role, "content": content}


def build_chat_input(
	history: Sequence[MessageRecord],
	content: str,
	*,
	image_urls: Sequence[str] = (),
	image_description: Optional[str] = None,
) -> List[Dict[str, Any]]:
	"""Return Responses API input: system prompt, prior turns, then the new user turn."""
	inputs = [_message("system", [{"type": "input_text", "text": chat_system_prompt()}])]
	for record in history:
		if record.role in ("user", "assistant") and record.content:
			inputs.append(_message(record.role, record.content))

	text = content
	if image_description:
		text = f"{content}\n\n[Description of the attached images]\n{image_description}"
	parts: List[Dict[str, Any]] = [{"type": "input_text", "text": text}]
	parts.extend({"type": "input_image", "image_url": url} for url in image_urls)
	inputs.append(_message("user", parts))
	return inputs


def build_vision_input(content: str, image_urls: Sequence[str]) -> List[Dict[str, Any]]:
	"""Return Responses API input asking the vision model to describe images."""
	parts: List[Dict[str, Any]] = [{"type": "input_text", "text": f"The user asked: {content}"}]
	parts.extend({"type": "input_image", "image_url": url} for url in image_urls)
	return [
		_message("system", [{"type": "input_text", "text": vision_system_prompt()}]),
		_message("user", parts),
	]
