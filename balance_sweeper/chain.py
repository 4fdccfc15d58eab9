"""
Substrate chain client used by the sweeper.

Wraps a SubstrateInterface connection: balance snapshots from System.Account,
fee estimates via payment info, signed submission with a watched status
stream, and the new-block header feed.
"""

import logging
from typing import Optional

from substrateinterface import ExtrinsicReceipt, Keypair, SubstrateInterface
from substrateinterface.exceptions import SubstrateRequestException
from websocket import WebSocketException

from .amounts import ZERO, Amount
from .errors import ConfigError, ConnectivityError, EstimationError, ExecutionFailure, SubmissionRejected
from .models import BalanceSnapshot, DispatchPlan, TransferMode
from .tracker import DispatchOutcome, StatusKind, StatusUpdate

# Transport-level failures: socket closed, refused, timed out
_TRANSPORT_ERRORS = (WebSocketException, OSError)

_REQUIRED_CALLS = ("transfer_all", "transfer_keep_alive")

# author_submitAndWatchExtrinsic status names
_STATUS_KINDS = {
    "future": StatusKind.POOLED,
    "ready": StatusKind.POOLED,
    "broadcast": StatusKind.POOLED,
    "retracted": StatusKind.RETRACTED,
    "inBlock": StatusKind.IN_BLOCK,
    "finalized": StatusKind.FINALIZED,
    "dropped": StatusKind.DROPPED,
    "usurped": StatusKind.DROPPED,
    "finalityTimeout": StatusKind.DROPPED,
    "invalid": StatusKind.INVALID,
}


def rpc_error_text(error: Exception) -> str:
    """Flattens a SubstrateRequestException payload into one line."""
    payload = error.args[0] if error.args else error
    if isinstance(payload, dict):
        message = payload.get("message", "")
        data = payload.get("data")
        return f"{message}: {data}" if data else str(message)
    return str(payload)


def derive_keypair(seed: str, ss58_format: int = 42) -> Keypair:
    """Loads the signing keypair from a mnemonic, hex seed or URI (//Alice)."""
    try:
        return Keypair.create_from_uri(seed, ss58_format=ss58_format)
    except Exception as e:
        # never echo the seed itself
        raise ConfigError(f"Invalid source seed ({type(e).__name__})") from e


class _ExtrinsicWatch:
    """Handle for one author_submitAndWatchExtrinsic subscription."""

    def __init__(self, substrate: SubstrateInterface, subscription_id: str):
        self.substrate = substrate
        self.subscription_id = subscription_id

    def unsubscribe(self):
        self.substrate.rpc_request("author_unwatchExtrinsic", [self.subscription_id])


class SubstrateChain:
    def __init__(self, substrate: SubstrateInterface):
        self.substrate = substrate
        self.token_decimals = self._first(substrate.token_decimals, 12)
        self.token_symbol = self._first(substrate.token_symbol, "UNIT")
        self._existential_deposit = None

    @staticmethod
    def _first(value, default):
        if isinstance(value, (list, tuple)):
            value = value[0] if value else None
        return default if value is None else value

    @classmethod
    def connect(
        cls,
        url: str,
        ss58_format: int = 42,
        type_registry_preset: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> "SubstrateChain":
        ws_options = {"timeout": timeout} if timeout else None
        try:
            substrate = SubstrateInterface(
                url=url,
                ss58_format=ss58_format,
                type_registry_preset=type_registry_preset,
                ws_options=ws_options,
            )
        except (SubstrateRequestException,) + _TRANSPORT_ERRORS as e:
            raise ConnectivityError(f"Connection to {url} failed: {e}") from e
        logging.info(f"Connected to node: {url} ({substrate.chain}, {substrate.runtime_version})")
        return cls(substrate)

    def reconnect(self):
        try:
            self.substrate.connect_websocket()
        except _TRANSPORT_ERRORS as e:
            raise ConnectivityError(f"Reconnect to {self.substrate.url} failed: {e}") from e
        logging.info(f"Reconnected to node: {self.substrate.url}")

    def close(self):
        self.substrate.close()

    def check_runtime(self):
        """Fails fast when the runtime lacks the Balances calls the sweeper uses."""
        for call_function in _REQUIRED_CALLS:
            if self.substrate.get_metadata_call_function("Balances", call_function) is None:
                raise ConfigError(f"No Balances.{call_function} call found in this runtime.")
        logging.info(f"Balances pallet found, existential deposit {self.format(self.existential_deposit)}")

    def format(self, amount: Amount) -> str:
        return Amount(amount).format_units(self.token_decimals, self.token_symbol)

    @property
    def existential_deposit(self) -> Amount:
        if self._existential_deposit is None:
            constant = self.substrate.get_constant("Balances", "ExistentialDeposit")
            self._existential_deposit = Amount(constant.value) if constant is not None else ZERO
        return self._existential_deposit

    def get_balances(self, address: str) -> BalanceSnapshot:
        """
        Reads System.Account for `address`.

        locked is `frozen` on current runtimes and max(misc_frozen, fee_frozen)
        on older ones. Reserved funds count towards the frozen amount, so the
        untouchable part is max(locked - reserved, existential deposit).
        """
        try:
            account = self.substrate.query(module="System", storage_function="Account", params=[address])
        except (SubstrateRequestException,) + _TRANSPORT_ERRORS as e:
            raise ConnectivityError(f"Balance query failed: {e}") from e

        data = account.value["data"]
        free = Amount(data["free"])
        reserved = Amount(data["reserved"])
        if "frozen" in data:
            locked = Amount(data["frozen"])
        else:
            locked = Amount(max(data.get("misc_frozen", 0), data.get("fee_frozen", 0)))

        untouchable = max(locked.saturating_sub(reserved), self.existential_deposit)
        return BalanceSnapshot(
            free=free,
            reserved=reserved,
            locked=locked,
            available=free.saturating_sub(untouchable),
        )

    def _transfer_call(self, mode: TransferMode, destination: str, amount: Optional[Amount]):
        if mode is TransferMode.DRAIN_ACCOUNT:
            return self.substrate.compose_call(
                call_module="Balances",
                call_function="transfer_all",
                call_params={"dest": destination, "keep_alive": False},
            )
        return self.substrate.compose_call(
            call_module="Balances",
            call_function="transfer_keep_alive",
            call_params={"dest": destination, "value": int(amount)},
        )

    def estimate_fee(self, mode: TransferMode, destination: str, amount: Optional[Amount], signer: Keypair) -> Amount:
        """
        Partial fee of the unsigned transfer. Drain mode leaves the amount unset;
        keep-alive callers pass the full available balance as worst case.
        """
        try:
            call = self._transfer_call(mode, destination, amount)
            payment_info = self.substrate.get_payment_info(call=call, keypair=signer)
        except _TRANSPORT_ERRORS as e:
            raise ConnectivityError(f"Fee estimation failed: {e}") from e
        except (SubstrateRequestException, ValueError) as e:
            raise EstimationError(f"Fee estimation failed: {e}") from e
        if not payment_info or "partialFee" not in payment_info:
            raise EstimationError(f"Fee estimation returned no partialFee: {payment_info!r}")
        return Amount(payment_info["partialFee"])

    def dispatch_outcome(self, extrinsic_hash: str, block_hash: str) -> Optional[DispatchOutcome]:
        try:
            receipt = ExtrinsicReceipt(
                substrate=self.substrate,
                extrinsic_hash=extrinsic_hash,
                block_hash=block_hash,
            )
            if receipt.is_success:
                return DispatchOutcome(success=True)
            error = receipt.error_message or {}
        except (SubstrateRequestException, ValueError) + _TRANSPORT_ERRORS as e:
            logging.warning(f"Could not read dispatch outcome for {extrinsic_hash}: {e}")
            return None
        return DispatchOutcome(
            success=False,
            error=ExecutionFailure(error.get("type", "Unknown"), error.get("name"), error.get("docs")),
        )

    def _status_update(self, status, extrinsic_hash: str, included_in: Optional[str] = None) -> StatusUpdate:
        """
        Maps one raw watch status to a StatusUpdate. The dispatch outcome is
        read for inBlock, and for finalized only when the block differs from
        `included_in` (the block whose outcome was already read).
        """
        if isinstance(status, dict):
            name, value = next(iter(status.items()))
        else:
            name, value = status, None
        kind = _STATUS_KINDS.get(name)
        if kind is None:
            logging.warning(f"Unknown extrinsic status {status!r}")
            kind = StatusKind.POOLED

        block_hash = value if kind in (StatusKind.IN_BLOCK, StatusKind.FINALIZED, StatusKind.RETRACTED) else None
        outcome = None
        if kind is StatusKind.IN_BLOCK or (kind is StatusKind.FINALIZED and block_hash != included_in):
            outcome = self.dispatch_outcome(extrinsic_hash, block_hash)
        return StatusUpdate(
            kind=kind,
            extrinsic_hash=extrinsic_hash,
            block_hash=block_hash,
            outcome=outcome,
            detail=name,
        )

    def submit(self, plan: DispatchPlan, signer: Keypair, on_status):
        """
        Signs and submits the plan, then blocks feeding status updates to
        `on_status(update, subscription)` until it returns True or the stream
        fails. Pool rejection raises SubmissionRejected.
        """
        try:
            call = self._transfer_call(plan.mode, plan.destination, plan.amount)
            extrinsic = self.substrate.create_signed_extrinsic(call=call, keypair=signer, tip=int(plan.tip))
        except SubstrateRequestException as e:
            raise SubmissionRejected(rpc_error_text(e)) from e
        except _TRANSPORT_ERRORS as e:
            raise ConnectivityError(f"Signing failed: {e}") from e

        extrinsic_hash = f"0x{extrinsic.extrinsic_hash.hex()}"
        watch = None
        included_in = None

        def result_handler(message, update_nr, subscription_id):
            nonlocal watch, included_in
            if watch is None:
                watch = _ExtrinsicWatch(self.substrate, subscription_id)
            update = self._status_update(message["params"]["result"], extrinsic_hash, included_in)
            if update.kind is StatusKind.IN_BLOCK:
                included_in = update.block_hash
            elif update.kind is StatusKind.RETRACTED:
                included_in = None
            if on_status(update, watch):
                return update
            return None

        logging.info(f"🚀 Submitting {plan.mode.value} transfer {extrinsic_hash} (tip {self.format(plan.tip)})")
        try:
            self.substrate.rpc_request(
                "author_submitAndWatchExtrinsic",
                [str(extrinsic.data)],
                result_handler=result_handler,
            )
        except SubstrateRequestException as e:
            raise SubmissionRejected(rpc_error_text(e)) from e
        except _TRANSPORT_ERRORS as e:
            raise ConnectivityError(f"Status stream failed: {e}") from e

    def subscribe_new_blocks(self, handler):
        """
        Blocks delivering each new block number to `handler`; returns when
        the handler returns something other than None.
        """

        def subscription_handler(obj, update_nr, subscription_id):
            return handler(obj["header"]["number"])

        try:
            return self.substrate.subscribe_block_headers(subscription_handler)
        except (SubstrateRequestException,) + _TRANSPORT_ERRORS as e:
            raise ConnectivityError(f"Block subscription failed: {e}") from e
