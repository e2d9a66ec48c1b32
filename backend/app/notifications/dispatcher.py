"""Push dispatcher: validate tokens, split them into batches and submit them."""
import asyncio
import logging
from typing import Iterable, Optional

from app.core.config import settings
from app.notifications.exceptions import ProviderBatchFailure
from app.notifications.gateway import DeliveryReceipt, PushGateway
from app.notifications.schemas import PushContent

logger = logging.getLogger(__name__)


def _mask(token: str) -> str:
    return f"{token[:24]}..." if len(token) > 24 else token


class PushDispatcher:
    """
    Fan one {title, body, data} payload out to many push tokens.

    Batches are submitted concurrently (bounded by ``max_concurrent_batches``)
    and each one is bounded by ``batch_timeout``. A batch that fails or times
    out is logged and contributes no receipts; the other batches still go out.
    Receipts come back grouped by batch in submission order.
    """

    def __init__(
        self,
        gateway: PushGateway,
        batch_size: int = settings.PUSH_BATCH_SIZE,
        batch_timeout: float = settings.PUSH_BATCH_TIMEOUT_SECONDS,
        max_concurrent_batches: int = settings.PUSH_MAX_CONCURRENT_BATCHES,
    ):
        self._gateway = gateway
        self._batch_size = max(1, min(batch_size, gateway.max_batch_size))
        self._batch_timeout = batch_timeout
        self._max_concurrent_batches = max(1, max_concurrent_batches)

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def is_valid_token(self, token: str) -> bool:
        return self._gateway.is_valid_token(token)

    def _partition(self, tokens: list[str]) -> list[list[str]]:
        size = self._batch_size
        return [tokens[i:i + size] for i in range(0, len(tokens), size)]

    async def send_batch(
        self,
        tokens: Iterable[str],
        title: str,
        body: str,
        data: Optional[dict] = None,
    ) -> list[DeliveryReceipt]:
        # Raises pydantic's ValidationError (a ValueError) for nested data values
        content = PushContent(title=title, body=body, data=data or {})

        valid_tokens = []
        for token in tokens:
            if not self._gateway.is_valid_token(token):
                logger.error(f"Push token {token!r} is not a valid push token, skipping")
                continue
            valid_tokens.append(token)

        if not valid_tokens:
            logger.debug("No valid push tokens to send to")
            return []

        batches = self._partition(valid_tokens)
        semaphore = asyncio.Semaphore(self._max_concurrent_batches)
        results = await asyncio.gather(*(
            self._submit(index, batch, content, semaphore)
            for index, batch in enumerate(batches)
        ))

        receipts = [receipt for batch_receipts in results for receipt in batch_receipts]
        failed = sum(1 for r in receipts if not r.ok)
        logger.info(
            f"Push dispatch finished: {len(valid_tokens)} tokens in {len(batches)} batches, "
            f"{len(receipts)} receipts ({failed} errors)"
        )
        return receipts

    async def _submit(
        self,
        index: int,
        tokens: list[str],
        content: PushContent,
        semaphore: asyncio.Semaphore,
    ) -> list[DeliveryReceipt]:
        messages = [self._gateway.build_message(token, content) for token in tokens]
        async with semaphore:
            try:
                receipts = await asyncio.wait_for(self._gateway.send(messages), timeout=self._batch_timeout)
            except asyncio.TimeoutError:
                logger.error(f"Push batch {index} ({len(tokens)} tokens) timed out after {self._batch_timeout}s")
                return []
            except ProviderBatchFailure as e:
                logger.error(f"Push batch {index} ({len(tokens)} tokens) rejected by provider: {e}")
                return []
            except Exception as e:
                logger.error(
                    f"Error sending push batch {index} ({len(tokens)} tokens): {type(e).__name__}: {e}",
                    exc_info=True,
                )
                return []

        for receipt in receipts:
            if not receipt.ok:
                logger.warning(
                    f"Push to {_mask(receipt.token)} failed: {receipt.error or 'unknown'} {receipt.message or ''}".rstrip()
                )
        return list(receipts)
