import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, TypeAdapter

from .clock import SystemClock
from .errors import FatalRemoteError, TransientRemoteError, UnregisteredOperationError
from .models import DrainResult, Mutation, OpType, QueuedMutation
from .storage import QUEUE_KEY, KeyValueStorage

logger = logging.getLogger(__name__)

Processor = Callable[[Any], Awaitable[None]]

_mutation_adapter = TypeAdapter(Mutation)


class MutationQueue:
    """
    Durable FIFO of remote writes that could not be applied yet.

    Presence in the queue means pending. An item leaves the queue when its
    processor succeeds, when the remote side rejects it for good, or when it
    is purged explicitly.
    """

    def __init__(self, storage: KeyValueStorage, clock=None):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.processors: Dict[OpType, Processor] = {}
        self._items: List[QueuedMutation] = self._load()

    def _load(self) -> List[QueuedMutation]:
        raw = self.storage.get(QUEUE_KEY)
        if not raw:
            return []
        try:
            data = json.loads(raw)
            items = [QueuedMutation.model_validate(item) for item in data]
        except (ValueError, TypeError) as e:
            # ValidationError is a ValueError
            logger.error(f"Failed to load offline queue: {e}. Starting with an empty queue.")
            return []
        if items:
            logger.info(f"Loaded {len(items)} pending mutations")
        return items

    def _save(self):
        self.storage.set(QUEUE_KEY, json.dumps([item.model_dump(mode="json") for item in self._items]))

    def register_processor(self, op_type: Union[OpType, str], processor: Processor):
        self.processors[OpType(op_type)] = processor

    def enqueue(self, op_type: Union[OpType, str], payload: Union[BaseModel, Dict[str, Any]]) -> QueuedMutation:
        op_type = OpType(op_type)
        if op_type not in self.processors:
            raise UnregisteredOperationError(op_type.value)

        data = payload.model_dump() if isinstance(payload, BaseModel) else dict(payload)
        data["kind"] = op_type.value
        mutation = _mutation_adapter.validate_python(data)

        item = QueuedMutation(mutation=mutation, enqueued_at=self.clock.now())
        self._items.append(item)
        self._save()
        logger.info(f"Queued {op_type.value} for retry ({len(self._items)} pending)")
        return item

    def items(self) -> List[QueuedMutation]:
        return [item.model_copy(deep=True) for item in self._items]

    def __len__(self) -> int:
        return len(self._items)

    def _remove(self, item_id: str):
        self._items = [i for i in self._items if i.id != item_id]
        self._save()

    def purge(self, predicate: Callable[[QueuedMutation], bool]) -> int:
        """Remove every pending item matching predicate. Returns how many were removed."""
        kept = [i for i in self._items if not predicate(i)]
        removed = len(self._items) - len(kept)
        if removed:
            self._items = kept
            self._save()
            logger.info(f"Purged {removed} queued mutations")
        return removed

    def clear(self):
        self._items = []
        self.storage.remove(QUEUE_KEY)

    async def drain(self, pause: Optional[Callable[[], Awaitable[None]]] = None) -> DrainResult:
        """
        Apply queued items in order, one at a time.

        The pass stops at the first item that fails transiently, leaving it and
        everything behind it in place. An item the remote side rejects is purged
        and the pass moves on. Items enqueued while draining wait for the next pass.
        """
        result = DrainResult()
        pending = list(self._items)
        if not pending:
            return result

        logger.info(f"Processing {len(pending)} queued mutations...")
        for index, item in enumerate(pending):
            if index > 0 and pause is not None:
                await pause()
            if not any(i.id == item.id for i in self._items):
                # Purged while we were waiting
                continue

            processor = self.processors.get(item.op_type)
            if processor is None:
                raise UnregisteredOperationError(item.op_type.value)

            try:
                await processor(item.mutation)
            except FatalRemoteError as e:
                logger.error(f"Dropping queued {item.op_type.value} {item.id}: rejected by remote: {e}")
                self._remove(item.id)
                result.purged += 1
                continue
            except TransientRemoteError as e:
                logger.warning(f"Queued {item.op_type.value} {item.id} failed, will retry: {e}")
                result.stopped = True
                break
            except Exception as e:
                logger.error(f"Unexpected error processing {item.id}: {e}", exc_info=True)
                result.stopped = True
                break

            self._remove(item.id)
            result.applied += 1

        result.remaining = len(self._items)
        logger.info(f"Queue pass done: {result.applied} applied, {result.purged} purged, {result.remaining} pending")
        return result
