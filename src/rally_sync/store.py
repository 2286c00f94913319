"""Client-side cache of conversations and their message sequences.

This is the only writer of per-conversation message state. Sequences are
mutated through exactly three operations:

* ``replace``: a fresh first page overwrites whatever was cached;
* ``append``: one live arrival (or a confirmed send) goes to the end;
* ``prepend_merge``: an older page goes in front, then duplicate ids are
  dropped keeping the first occurrence. Merging the same page twice is a
  no-op.

``append`` never rejects a duplicate id because push events and fetches are
not ordered against each other; ``visible_messages`` is the de-duplicated
view the presentation layer renders. All operations are synchronous.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .models import Conversation, LastMessage, Message, Sender, utc_now

logger = logging.getLogger(__name__)

StoreListener = Callable[[Optional[str]], None]
Scheduler = Callable[[float, Callable[[], None]], asyncio.TimerHandle]


def _dedupe(messages: Iterable[Message]) -> List[Message]:
    seen: set[str] = set()
    unique: List[Message] = []
    for message in messages:
        if message.id in seen:
            continue
        seen.add(message.id)
        unique.append(message)
    return unique


@dataclass(frozen=True)
class TypingIndicator:
    name: str
    expires_at: float


class ConversationStore:
    def __init__(
        self,
        *,
        typing_clear_s: float = 3.0,
        call_later: Scheduler | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._typing_clear_s = typing_clear_s
        self._call_later = call_later
        self._clock = clock
        self._conversations: Dict[str, Conversation] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._has_more: Dict[str, bool] = {}
        self._typing: Dict[str, TypingIndicator] = {}
        self._typing_timers: Dict[str, asyncio.TimerHandle] = {}
        self._listeners: List[StoreListener] = []
        self.active_chat_id: Optional[str] = None
        self.self_user_id: Optional[str] = None

    # Change notification.

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                return

        return unsubscribe

    def _changed(self, chat_id: Optional[str]) -> None:
        for listener in list(self._listeners):
            listener(chat_id)

    # Message sequences.

    def messages(self, chat_id: str) -> Tuple[Message, ...]:
        return tuple(self._messages.get(chat_id, ()))

    def visible_messages(self, chat_id: str) -> List[Message]:
        """Render view: unique ids, oldest first, arrival order on equal timestamps."""

        unique = _dedupe(self._messages.get(chat_id, ()))
        return sorted(unique, key=lambda message: message.created_at)

    def replace(self, chat_id: str, messages: Iterable[Message]) -> None:
        self._messages[chat_id] = list(messages)
        self._changed(chat_id)

    def append(self, chat_id: str, message: Message) -> None:
        self._messages.setdefault(chat_id, []).append(message)
        self._note_arrival(chat_id, message)
        self._changed(chat_id)

    def prepend_merge(self, chat_id: str, older: Iterable[Message]) -> None:
        merged = list(older) + self._messages.get(chat_id, [])
        self._messages[chat_id] = _dedupe(merged)
        self._changed(chat_id)

    def oldest_id(self, chat_id: str) -> Optional[str]:
        """Cursor for the next older page: the oldest confirmed id held."""

        for message in self._messages.get(chat_id, ()):
            if not message.pending and not message.failed:
                return message.id
        return None

    def has_more(self, chat_id: str) -> bool:
        return self._has_more.get(chat_id, True)

    def set_has_more(self, chat_id: str, has_more: bool) -> None:
        self._has_more[chat_id] = has_more

    # Optimistic sends.

    def add_pending(
        self,
        chat_id: str,
        content: str,
        client_id: str,
        sender: Sender,
        reply_to: str | None = None,
    ) -> Message:
        message = Message(
            id=client_id,
            chat_id=chat_id,
            sender=sender,
            content=content,
            created_at=utc_now(),
            reply_to=reply_to,
            client_id=client_id,
            pending=True,
        )
        self._messages.setdefault(chat_id, []).append(message)
        self._changed(chat_id)
        return message

    def confirm_pending(self, chat_id: str, client_id: str, message: Message) -> bool:
        """Swap the pending entry for ``client_id`` with the server's message.

        Returns ``False`` when no such pending entry exists; the caller then
        treats ``message`` as an ordinary arrival.
        """

        sequence = self._messages.get(chat_id, [])
        for index, existing in enumerate(sequence):
            if existing.client_id == client_id and (existing.pending or existing.failed):
                sequence[index] = replace(message, client_id=client_id, pending=False, failed=False)
                self._note_arrival(chat_id, message)
                self._changed(chat_id)
                return True
        return False

    def fail_pending(self, chat_id: str, client_id: str) -> bool:
        sequence = self._messages.get(chat_id, [])
        for index, existing in enumerate(sequence):
            if existing.client_id == client_id and existing.pending:
                sequence[index] = existing.as_failed()
                self._changed(chat_id)
                return True
        return False

    def pending_ids(self, chat_id: str) -> List[str]:
        return [message.id for message in self._messages.get(chat_id, ()) if message.pending]

    # Conversations.

    def set_conversations(self, conversations: Iterable[Conversation]) -> None:
        self._conversations = {conversation.id: conversation for conversation in conversations}
        self._changed(None)

    def conversation(self, chat_id: str) -> Optional[Conversation]:
        return self._conversations.get(chat_id)

    def conversations(self) -> List[Conversation]:
        def last_activity(conversation: Conversation) -> float:
            last = conversation.last_message
            return last.created_at.timestamp() if last is not None else 0.0

        return sorted(self._conversations.values(), key=last_activity, reverse=True)

    @property
    def total_unread(self) -> int:
        return sum(conversation.unread_count for conversation in self._conversations.values())

    def set_unread(self, chat_id: str, count: int) -> None:
        conversation = self._conversations.get(chat_id)
        if conversation is None:
            return
        conversation.unread_count = max(0, count)
        self._changed(chat_id)

    def set_muted(self, chat_id: str, muted: bool) -> None:
        conversation = self._conversations.get(chat_id)
        if conversation is None:
            return
        conversation.is_muted = muted
        self._changed(chat_id)

    def _note_arrival(self, chat_id: str, message: Message) -> None:
        conversation = self._conversations.get(chat_id)
        if conversation is None:
            return
        conversation.last_message = LastMessage.from_message(message)
        is_own = self.self_user_id is not None and message.sender.id == self.self_user_id
        if not is_own and not conversation.is_muted and chat_id != self.active_chat_id:
            conversation.unread_count += 1

    # Typing indicators.

    def typing(self, chat_id: str) -> Optional[str]:
        indicator = self._typing.get(chat_id)
        return indicator.name if indicator is not None else None

    def set_typing(self, chat_id: str, name: str | None) -> None:
        """Overwrite the indicator; a name auto-clears unless refreshed first."""

        timer = self._typing_timers.pop(chat_id, None)
        if timer is not None:
            timer.cancel()
        if name is None:
            if self._typing.pop(chat_id, None) is not None:
                self._changed(chat_id)
            return

        call_later = self._call_later or asyncio.get_running_loop().call_later
        clock = self._clock or asyncio.get_running_loop().time
        self._typing[chat_id] = TypingIndicator(name=name, expires_at=clock() + self._typing_clear_s)
        self._typing_timers[chat_id] = call_later(self._typing_clear_s, lambda: self._expire_typing(chat_id))
        self._changed(chat_id)

    def _expire_typing(self, chat_id: str) -> None:
        self._typing_timers.pop(chat_id, None)
        if self._typing.pop(chat_id, None) is not None:
            self._changed(chat_id)

    # Reset.

    def clear(self, chat_id: str) -> None:
        self._messages.pop(chat_id, None)
        self._has_more.pop(chat_id, None)
        self.set_typing(chat_id, None)
        self._changed(chat_id)

    def reset(self) -> None:
        for timer in self._typing_timers.values():
            timer.cancel()
        self._typing_timers.clear()
        self._typing.clear()
        self._messages.clear()
        self._has_more.clear()
        self._conversations.clear()
        self.active_chat_id = None
        self.self_user_id = None
        self._changed(None)
