"""Conversation persistence used by the chat event emitter."""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple
from uuid import uuid4

from dal.conversation_dal import ConversationDAL
from dal.message_dal import MessageDAL
from models.message_record import ConversationRecord, MessageRecord

LOGGER = logging.getLogger(__name__)

TITLE_LENGTH = 50


def conversation_title(content: str) -> str:
	"""Return a short title from the first user message."""
	text = " ".join(content.split())
	if not text:
		return "New conversation"
	return text if len(text) <= TITLE_LENGTH else f"{text[:TITLE_LENGTH]}..."


class ChatHistory:
	"""Resolve conversations and store each user turn and reply."""

	def __init__(self, db_initializer) -> None:
		self.conversations = ConversationDAL(db_initializer)
		self.messages = MessageDAL(db_initializer)

	async def ensure_conversation(
		self, conversation_id: Optional[str], *, content: str, model: str
	) -> Tuple[str, bool]:
		"""Return `(conversation_id, created)`, creating the conversation when needed."""
		if conversation_id:
			existing = await self.conversations.get_conversation(conversation_id)
			if existing is not None:
				return conversation_id, False
			LOGGER.info("Conversation %s not found; creating it", conversation_id)
		new_id = conversation_id or uuid4().hex
		await self.conversations.create_conversation(
			ConversationRecord(id=new_id, title=conversation_title(content), model=model)
		)
		return new_id, True

	async def recent(self, conversation_id: str, limit: int) -> List[MessageRecord]:
		if limit <= 0:
			return []
		return await self.messages.recent_messages(conversation_id, limit)

	async def save(self, record: MessageRecord) -> Optional[int]:
		"""Store one message and bump the conversation's activity time."""
		row_id = await self.messages.create_message(record)
		if row_id is None:
			LOGGER.info("Message %s (%s) already stored", record.message_id, record.role)
		await self.conversations.touch(record.conversation_id)
		return row_id
