# apps/pass_sync/services/ledger/web3_client.py

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ContractLogicError

from apps.pass_sync.config.contract_abi import LEDGER_EVENT_NAMES, WAVEX_NFT_ABI
from apps.pass_sync.config.settings import Settings
from apps.pass_sync.services.errors import (
    ConfigurationError,
    LedgerUnavailableError,
    NotFoundError,
    UnauthorizedOperatorError,
)
from apps.pass_sync.services.ledger.checkin_tag import format_check_in_tag
from apps.pass_sync.services.ledger.models import (
    CheckInConfirmation,
    EventDetails,
    LedgerEvent,
    LedgerEventType,
    PurchaseRecord,
    TransactionKind,
    TransactionRecord,
)

log = logging.getLogger("pass_sync.ledger")


def _token_id(account: str) -> int:
    try:
        value = int(str(account).strip())
    except (TypeError, ValueError):
        raise NotFoundError(f"Unknown account: {account}")
    if value < 0:
        raise NotFoundError(f"Unknown account: {account}")
    return value


def _utc(ts: Any) -> Optional[datetime]:
    if not ts:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)


class Web3LedgerClient:
    """
    Ledger adapter over the WaveX NFT contract.

    Design goals:
    - Reads retry with linear backoff, then raise LedgerUnavailableError
    - Contract reverts are never retried
    - Check-in submission is single-shot (a retried write could double-spend a ticket)
    - Raw uint256 amounts are scaled by token decimals before leaving this class
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        contract_address: str,
        *,
        signer_key: Optional[str] = None,
        chain_id: Optional[int] = None,
        token_decimals: int = 6,
        confirmations: int = 2,
        poll_interval_seconds: float = 5.0,
        max_block_range: int = 2000,
        max_retries: int = 3,
        retry_backoff_seconds: float = 1.5,
    ) -> None:
        self.w3 = w3
        self.contract = w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(contract_address),
            abi=WAVEX_NFT_ABI,
        )
        self.signer = w3.eth.account.from_key(signer_key) if signer_key else None
        self.chain_id = chain_id
        self.scale = Decimal(10) ** int(token_decimals)
        self.confirmations = max(0, int(confirmations))
        self.poll_interval_seconds = poll_interval_seconds
        self.max_block_range = max(1, int(max_block_range))
        self.max_retries = max(1, int(max_retries))
        self.retry_backoff_seconds = retry_backoff_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "Web3LedgerClient":
        if not settings.ledger_rpc_url or not settings.ledger_contract_address:
            raise ConfigurationError("Missing LEDGER_RPC_URL or LEDGER_CONTRACT_ADDRESS")
        w3 = AsyncWeb3(AsyncHTTPProvider(settings.ledger_rpc_url))
        return cls(
            w3,
            settings.ledger_contract_address,
            signer_key=settings.ledger_signer_key,
            chain_id=settings.ledger_chain_id,
            token_decimals=settings.token_decimals,
            confirmations=settings.ledger_confirmations,
            poll_interval_seconds=settings.ledger_poll_interval_seconds,
            max_block_range=settings.ledger_max_block_range,
            max_retries=settings.ledger_max_retries,
            retry_backoff_seconds=settings.ledger_retry_backoff_seconds,
        )

    # ---------------------------------------------------------
    # Low-level call handler
    # ---------------------------------------------------------
    async def _call(self, label: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                return await factory()
            except ContractLogicError:
                raise
            except Exception as e:
                last_error = e
                if attempt < self.max_retries:
                    log.warning(f"[LEDGER] {label} failed (attempt {attempt}): {e}")
                    await asyncio.sleep(self.retry_backoff_seconds * attempt)
                    continue
                break

        raise LedgerUnavailableError(f"Ledger call {label} failed after retries: {last_error}")

    def _units(self, raw: Any) -> Decimal:
        return Decimal(int(raw)) / self.scale

    # ---------------------------------------------------------
    # Queries
    # ---------------------------------------------------------
    async def ping(self) -> None:
        connected = await self._call("is_connected", lambda: self.w3.is_connected())
        if not connected:
            raise LedgerUnavailableError("Ledger RPC not connected")
        if self.chain_id is not None:
            chain_id = await self._call("chain_id", lambda: self.w3.eth.chain_id)
            if int(chain_id) != int(self.chain_id):
                raise LedgerUnavailableError(f"Unexpected chain id {chain_id}")

    async def account_exists(self, account: str) -> bool:
        token_id = _token_id(account)
        try:
            owner = await self._call(
                "ownerOf", lambda: self.contract.functions.ownerOf(token_id).call()
            )
        except ContractLogicError:
            return False
        return bool(owner)

    async def get_balance(self, account: str) -> Decimal:
        token_id = _token_id(account)
        try:
            raw = await self._call(
                "tokenBalance", lambda: self.contract.functions.tokenBalance(token_id).call()
            )
        except ContractLogicError as e:
            raise NotFoundError(f"Unknown account: {account}") from e
        return self._units(raw)

    async def get_event(self, event_id: str) -> EventDetails:
        event_num = _token_id(event_id)
        try:
            row = await self._call(
                "events", lambda: self.contract.functions.events(event_num).call()
            )
        except ContractLogicError as e:
            raise NotFoundError(f"Event not found: {event_id}") from e

        name = row[0] if row else ""
        if not name:
            raise NotFoundError(f"Event not found: {event_id}")
        return EventDetails(event_id=str(event_id), name=str(name), active=bool(row[4]))

    async def query_transactions(
        self, account: str, limit: Optional[int] = None,
    ) -> List[TransactionRecord]:
        token_id = _token_id(account)
        try:
            count = int(await self._call(
                "getTransactionCount",
                lambda: self.contract.functions.getTransactionCount(token_id).call(),
            ))
        except ContractLogicError as e:
            raise NotFoundError(f"Unknown account: {account}") from e

        start = max(0, count - int(limit)) if limit else 0

        async def fetch(index: int) -> TransactionRecord:
            tx = await self._call(
                f"getTransaction[{index}]",
                lambda: self.contract.functions.getTransaction(token_id, index).call(),
            )
            timestamp, merchant, amount, tx_type, metadata = tx
            return TransactionRecord(
                index=index,
                timestamp=_utc(timestamp),
                counterparty=merchant,
                amount=self._units(amount),
                kind=TransactionKind.parse(tx_type),
                note=metadata or "",
            )

        return list(await asyncio.gather(*(fetch(i) for i in range(start, count))))

    async def query_purchases(
        self, account: str, event_id: Optional[str] = None,
    ) -> List[PurchaseRecord]:
        token_id = _token_id(account)
        try:
            event_ids = await self._call(
                "getTokenEvents", lambda: self.contract.functions.getTokenEvents(token_id).call()
            )
        except ContractLogicError as e:
            raise NotFoundError(f"Unknown account: {account}") from e

        records = [PurchaseRecord(account=str(account), event_id=str(e)) for e in event_ids]
        if event_id is not None:
            records = [r for r in records if r.event_id == str(event_id)]
        return records

    async def is_authorized_operator(self, operator: str) -> bool:
        try:
            address = AsyncWeb3.to_checksum_address(operator)
        except ValueError:
            return False
        return bool(await self._call(
            "authorizedMerchants",
            lambda: self.contract.functions.authorizedMerchants(address).call(),
        ))

    # ---------------------------------------------------------
    # Submission
    # ---------------------------------------------------------
    async def submit_check_in(
        self, account: str, event_id: str, ticket_number: int, operator: str,
    ) -> CheckInConfirmation:
        if self.signer is None:
            raise ConfigurationError("LEDGER_SIGNER_KEY not configured; cannot submit check-ins")
        if str(operator).lower() != self.signer.address.lower():
            raise UnauthorizedOperatorError(
                "Operator does not match the configured signer",
                details={"operator": operator},
            )

        token_id = _token_id(account)
        tag = format_check_in_tag(event_id, ticket_number)

        try:
            nonce = await self.w3.eth.get_transaction_count(self.signer.address, "pending")
            tx = await self.contract.functions.processPayment(token_id, 0, tag).build_transaction(
                {"from": self.signer.address, "nonce": nonce}
            )
            signed = self.signer.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash)
        except ContractLogicError as e:
            raise UnauthorizedOperatorError(f"Check-in rejected by ledger: {e}") from e
        except Exception as e:
            raise LedgerUnavailableError(f"Check-in submission failed: {e}") from e

        log.info(f"[LEDGER] Check-in {tag} submitted for account {account}")
        return CheckInConfirmation(
            tx_hash=AsyncWeb3.to_hex(tx_hash),
            block_number=receipt.get("blockNumber"),
        )

    # ---------------------------------------------------------
    # Event stream
    # ---------------------------------------------------------
    async def subscribe_events(self, from_block: Optional[int] = None) -> AsyncIterator[LedgerEvent]:
        """
        Polls confirmed block ranges for the three pass-relevant events.
        Transport failures surface as LedgerUnavailableError; the consumer reconnects.
        """
        if from_block is None:
            next_block = int(await self._call("block_number", lambda: self.w3.eth.block_number))
        else:
            next_block = int(from_block)

        while True:
            head = int(await self._call("block_number", lambda: self.w3.eth.block_number))
            safe_head = head - self.confirmations
            if safe_head < next_block:
                await asyncio.sleep(self.poll_interval_seconds)
                continue

            to_block = min(safe_head, next_block + self.max_block_range - 1)
            logs: List[Any] = []
            for name in LEDGER_EVENT_NAMES:
                event = getattr(self.contract.events, name)
                logs.extend(await self._call(
                    f"get_logs:{name}",
                    lambda e=event: e.get_logs(from_block=next_block, to_block=to_block),
                ))
            logs.sort(key=lambda entry: (entry["blockNumber"], entry["logIndex"]))

            block_times: Dict[int, Optional[datetime]] = {}
            for entry in logs:
                yield await self._decode(entry, block_times)

            next_block = to_block + 1

    async def _decode(self, entry: Any, block_times: Dict[int, Optional[datetime]]) -> LedgerEvent:
        name = entry["event"]
        args = entry["args"]
        block_number = int(entry["blockNumber"])
        account = str(args["tokenId"])

        if name == LedgerEventType.BALANCE_UPDATED.value:
            payload = {
                "new_balance": self._units(args["newBalance"]),
                "update_type": str(args["updateType"]),
            }
        elif name == LedgerEventType.TRANSACTION_RECORDED.value:
            if block_number not in block_times:
                block = await self._call(
                    f"get_block[{block_number}]", lambda: self.w3.eth.get_block(block_number)
                )
                block_times[block_number] = _utc(block.get("timestamp"))
            payload = {
                "transaction_type": str(args["transactionType"]).upper(),
                "amount": self._units(args["amount"]),
                "timestamp": block_times[block_number],
            }
        else:
            payload = {"event_id": str(args["eventId"])}

        return LedgerEvent(
            type=LedgerEventType(name),
            account=account,
            payload=payload,
            block_number=block_number,
            log_index=int(entry["logIndex"]),
        )
