"""Story Protocol registration client.

Thin wrapper over the Story periphery contracts. Every public method returns a
result object instead of raising, so callers decide how a failure is recorded.
Only gas estimation is retried: once a transaction is submitted it is never
resent from here.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Tuple

import structlog
from eth_account import Account
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound
from web3.logs import DISCARD

from ipforge.abi import get_contract_abi
from ipforge.services.exceptions import (
    GasEstimationError,
    RegistrationEventNotFoundError,
    TransactionRevertError,
    TransactionSubmissionError,
    TransactionTimeoutError,
)
from ipforge.services.story.metadata import IPMetadata, encode_metadata

logger = structlog.get_logger()

# Story SDK defaults for derivative registration
MAX_ROYALTY_TOKENS = 100_000_000
MAX_REVENUE_SHARE = 100_000_000  # 100% scaled by 10^6

GAS_ESTIMATION_ATTEMPTS = 3


@dataclass
class RegistrationResult:
    """Outcome of a mint-and-register call.

    pending is set when a submitted transaction has no final receipt yet; the
    caller must look it up again instead of submitting a new one.
    """

    success: bool
    ip_id: str | None = None
    token_id: int | None = None
    tx_hash: str | None = None
    error: str | None = None
    pending: bool = False


@dataclass
class LicenseTokenResult:
    """Outcome of a license token mint."""

    success: bool
    license_token_ids: list[int] = field(default_factory=list)
    tx_hash: str | None = None
    error: str | None = None


class StoryRegistrationClient:
    """Registers IP assets on Story Protocol from the backend wallet."""

    def __init__(
        self,
        w3: Web3,
        private_key: str,
        spg_nft_contract: str,
        derivative_workflows_address: str,
        registration_workflows_address: str,
        licensing_module_address: str,
        license_template_address: str,
        ip_asset_registry_address: str,
        gas_buffer_percentage: float = 0.20,
        transaction_timeout: int = 180,
        gas_retry_delay: float = 2.0,
    ):
        """
        Initialize registration client.

        Args:
            w3: Web3 instance (connected to Story RPC)
            private_key: Backend wallet private key (0x-prefixed hex)
            spg_nft_contract: SPG NFT collection used for minting
            derivative_workflows_address: DerivativeWorkflows periphery contract
            registration_workflows_address: RegistrationWorkflows periphery contract
            licensing_module_address: LicensingModule core contract
            license_template_address: PIL license template
            ip_asset_registry_address: IPAssetRegistry (emits IPRegistered)
            gas_buffer_percentage: Safety buffer for gas estimation (default: 0.20 = 20%)
            transaction_timeout: Max wait time for confirmation in seconds (default: 180)
            gas_retry_delay: Base delay between gas estimation attempts in seconds
        """
        self.w3 = w3
        self.private_key = private_key
        self.spg_nft_contract = Web3.to_checksum_address(spg_nft_contract)
        self.license_template = Web3.to_checksum_address(license_template_address)
        self.gas_buffer = 1.0 + gas_buffer_percentage
        self.transaction_timeout = transaction_timeout
        self.gas_retry_delay = gas_retry_delay

        self.derivative_workflows = self._contract(
            derivative_workflows_address, "DerivativeWorkflows"
        )
        self.registration_workflows = self._contract(
            registration_workflows_address, "RegistrationWorkflows"
        )
        self.licensing_module = self._contract(licensing_module_address, "LicensingModule")
        self.ip_asset_registry = self._contract(ip_asset_registry_address, "IPAssetRegistry")

        self.account = Account.from_key(private_key)
        self.address = self.account.address

        logger.info(
            "story_client.initialized",
            wallet_address=self.address,
            spg_nft_contract=self.spg_nft_contract,
            gas_buffer=self.gas_buffer,
            timeout=transaction_timeout,
        )

    def _contract(self, address: str, abi_name: str) -> Any:
        return self.w3.eth.contract(
            address=Web3.to_checksum_address(address), abi=get_contract_abi(abi_name)
        )

    def _recipient(self, recipient: str | None) -> str:
        return Web3.to_checksum_address(recipient) if recipient else self.address

    @staticmethod
    def _ip_metadata_tuple(metadata: IPMetadata) -> tuple[str, bytes, str, bytes]:
        uri, digest = encode_metadata(metadata)
        # Same document is used for the IP and its NFT
        return (uri, digest, uri, digest)

    async def mint_and_register_derivative(
        self,
        parent_ip_ids: list[str],
        license_terms_id: str,
        metadata: IPMetadata,
        recipient: str | None = None,
    ) -> RegistrationResult:
        """Mint an NFT and register it as a derivative of the given parents.

        The parent list is submitted exactly as given, one license terms id per
        parent; enforcing the parent ceiling is the caller's job.

        Args:
            parent_ip_ids: Parent IP ids (order preserved)
            license_terms_id: License terms attached to every parent
            metadata: IP metadata for the new asset
            recipient: NFT recipient (default: backend wallet)

        Returns:
            RegistrationResult with ip_id, token_id and tx_hash on success
        """
        try:
            terms_id = int(license_terms_id)
            deriv_data = (
                [Web3.to_checksum_address(ip_id) for ip_id in parent_ip_ids],
                self.license_template,
                [terms_id] * len(parent_ip_ids),
                b"",
                0,
                MAX_ROYALTY_TOKENS,
                MAX_REVENUE_SHARE,
            )
            fn = self.derivative_workflows.functions.mintAndRegisterIpAndMakeDerivative(
                self.spg_nft_contract,
                deriv_data,
                self._ip_metadata_tuple(metadata),
                self._recipient(recipient),
                True,
            )
            logger.info(
                "story_client.derivative_registering",
                parent_count=len(parent_ip_ids),
                license_terms_id=terms_id,
            )
            tx_hash, receipt = await self._transact(fn, "mint_and_register_derivative")
            ip_id, token_id = self._parse_ip_registered(receipt)
        except TransactionTimeoutError as e:
            return RegistrationResult(
                success=False, pending=True, tx_hash=e.tx_hash, error=str(e)
            )
        except Exception as e:
            logger.error("story_client.derivative_failed", error=str(e))
            return RegistrationResult(success=False, error=str(e) or type(e).__name__)

        logger.info(
            "story_client.derivative_registered", ip_id=ip_id, token_id=token_id, tx_hash=tx_hash
        )
        return RegistrationResult(success=True, ip_id=ip_id, token_id=token_id, tx_hash=tx_hash)

    async def check_registration_transaction(self, tx_hash: str) -> RegistrationResult:
        """Look up a registration transaction submitted earlier.

        Returns:
            success with ip_id once mined; success=False without pending when it
            reverted; pending=True while there is no receipt or it cannot be read
        """
        try:
            receipt = await asyncio.to_thread(self.w3.eth.get_transaction_receipt, tx_hash)
        except TransactionNotFound:
            logger.info("story_client.transaction_still_pending", tx_hash=tx_hash)
            return RegistrationResult(success=False, pending=True, tx_hash=tx_hash)
        except Exception as e:
            logger.warning("story_client.receipt_lookup_failed", tx_hash=tx_hash, error=str(e))
            return RegistrationResult(
                success=False, pending=True, tx_hash=tx_hash, error=f"Receipt lookup failed: {e}"
            )

        if receipt["status"] == 0:
            logger.warning("story_client.pending_transaction_reverted", tx_hash=tx_hash)
            return RegistrationResult(
                success=False, tx_hash=tx_hash, error=f"Transaction reverted: {tx_hash}"
            )

        try:
            ip_id, token_id = self._parse_ip_registered(receipt)
        except RegistrationEventNotFoundError as e:
            # Mined but unreadable: keep it pending so nothing is resubmitted
            logger.error("story_client.pending_transaction_unparsed", tx_hash=tx_hash)
            return RegistrationResult(success=False, pending=True, tx_hash=tx_hash, error=str(e))

        logger.info(
            "story_client.pending_transaction_confirmed",
            ip_id=ip_id,
            token_id=token_id,
            tx_hash=tx_hash,
            block_number=receipt["blockNumber"],
        )
        return RegistrationResult(success=True, ip_id=ip_id, token_id=token_id, tx_hash=tx_hash)

    async def mint_and_register_standalone(
        self, metadata: IPMetadata, recipient: str | None = None
    ) -> RegistrationResult:
        """Mint an NFT and register it as an IP asset with no parents."""
        try:
            fn = self.registration_workflows.functions.mintAndRegisterIp(
                self.spg_nft_contract,
                self._recipient(recipient),
                self._ip_metadata_tuple(metadata),
                True,
            )
            tx_hash, receipt = await self._transact(fn, "mint_and_register_standalone")
            ip_id, token_id = self._parse_ip_registered(receipt)
        except Exception as e:
            logger.error("story_client.standalone_failed", error=str(e))
            return RegistrationResult(success=False, error=str(e) or type(e).__name__)

        logger.info(
            "story_client.standalone_registered", ip_id=ip_id, token_id=token_id, tx_hash=tx_hash
        )
        return RegistrationResult(success=True, ip_id=ip_id, token_id=token_id, tx_hash=tx_hash)

    async def mint_license_tokens(
        self,
        licensor_ip_id: str,
        license_terms_id: str,
        amount: int = 1,
        receiver: str | None = None,
        max_minting_fee: int = 0,
        max_revenue_share: int = 0,
    ) -> LicenseTokenResult:
        """Mint license tokens of a licensor IP.

        Returns:
            LicenseTokenResult with the minted token ids on success
        """
        try:
            fn = self.licensing_module.functions.mintLicenseTokens(
                Web3.to_checksum_address(licensor_ip_id),
                self.license_template,
                int(license_terms_id),
                amount,
                self._recipient(receiver),
                b"",
                max_minting_fee,
                max_revenue_share,
            )
            tx_hash, receipt = await self._transact(fn, "mint_license_tokens")
            events = self.licensing_module.events.LicenseTokensMinted().process_receipt(
                receipt, errors=DISCARD
            )
            if not events:
                raise RegistrationEventNotFoundError(
                    f"No LicenseTokensMinted event in transaction {tx_hash}"
                )
            args = events[0]["args"]
            start = int(args["startLicenseTokenId"])
            token_ids = list(range(start, start + int(args["amount"])))
        except Exception as e:
            logger.error(
                "story_client.license_mint_failed", licensor_ip_id=licensor_ip_id, error=str(e)
            )
            return LicenseTokenResult(success=False, error=str(e) or type(e).__name__)

        logger.info(
            "story_client.license_tokens_minted",
            licensor_ip_id=licensor_ip_id,
            license_token_ids=token_ids,
            tx_hash=tx_hash,
        )
        return LicenseTokenResult(success=True, license_token_ids=token_ids, tx_hash=tx_hash)

    def _parse_ip_registered(self, receipt: Any) -> Tuple[str, int]:
        """Extract (ip_id, token_id) of the asset minted from the SPG collection."""
        events = self.ip_asset_registry.events.IPRegistered().process_receipt(
            receipt, errors=DISCARD
        )
        for event in events:
            args = event["args"]
            if Web3.to_checksum_address(args["tokenContract"]) == self.spg_nft_contract:
                return Web3.to_checksum_address(args["ipId"]), int(args["tokenId"])
        if events:
            args = events[-1]["args"]
            return Web3.to_checksum_address(args["ipId"]), int(args["tokenId"])
        raise RegistrationEventNotFoundError("No IPRegistered event in transaction receipt")

    async def estimate_gas(self, fn: Any, operation: str) -> Tuple[int, int, int]:
        """
        Estimate gas parameters for a contract call, retrying transient failures.

        Returns:
            Tuple of (gas_limit, max_fee_per_gas, max_priority_fee_per_gas)

        Raises:
            GasEstimationError: All attempts failed
        """
        last_error: Exception | None = None
        for attempt in range(1, GAS_ESTIMATION_ATTEMPTS + 1):
            try:
                return await asyncio.to_thread(self._estimate_gas_sync, fn)
            except Exception as e:
                last_error = e
                logger.warning(
                    "story_client.gas_estimation_failed",
                    operation=operation,
                    attempt=attempt,
                    max_attempts=GAS_ESTIMATION_ATTEMPTS,
                    error=str(e),
                )
                # Reverts will not change on retry
                if "execution reverted" in str(e).lower():
                    break
                if attempt < GAS_ESTIMATION_ATTEMPTS:
                    await asyncio.sleep(self.gas_retry_delay * attempt)

        error_msg = str(last_error)
        if "insufficient funds" in error_msg.lower():
            context = (
                "Backend wallet has insufficient balance for gas. "
                f"Check balance at {self.address}."
            )
        elif "execution reverted" in error_msg.lower():
            context = (
                f"Transaction simulation reverted: {error_msg}. "
                "Verify parent IP ids have the license terms attached."
            )
        else:
            context = f"Gas estimation failed: {error_msg}"
        raise GasEstimationError(context) from last_error

    def _estimate_gas_sync(self, fn: Any) -> Tuple[int, int, int]:
        estimated_gas = fn.estimate_gas({"from": self.address})
        gas_limit = int(estimated_gas * self.gas_buffer)

        max_priority_fee = self.w3.eth.max_priority_fee
        latest_block = self.w3.eth.get_block("latest")
        base_fee = latest_block.get("baseFeePerGas", 0)  # type: ignore[arg-type]

        max_priority_fee_buffered = int(max_priority_fee * self.gas_buffer)
        max_fee_per_gas = int((base_fee * 2) + max_priority_fee_buffered)

        logger.debug(
            "story_client.gas_estimated",
            estimated_gas=estimated_gas,
            gas_limit=gas_limit,
            base_fee=base_fee,
            max_fee_per_gas=max_fee_per_gas,
        )
        return gas_limit, max_fee_per_gas, max_priority_fee_buffered

    async def _transact(self, fn: Any, operation: str) -> Tuple[str, Any]:
        """
        Sign, submit and confirm a contract call.

        Returns:
            Tuple of (tx_hash, receipt)

        Raises:
            GasEstimationError, TransactionSubmissionError, TransactionTimeoutError,
            TransactionRevertError
        """
        gas_limit, max_fee_per_gas, max_priority_fee_per_gas = await self.estimate_gas(
            fn, operation
        )
        tx_hash = await asyncio.to_thread(
            self._sign_and_send, fn, operation, gas_limit, max_fee_per_gas, max_priority_fee_per_gas
        )

        try:
            receipt = await asyncio.to_thread(
                self.w3.eth.wait_for_transaction_receipt, tx_hash, self.transaction_timeout
            )
        except TimeExhausted as e:
            logger.warning(
                "story_client.transaction_timeout",
                operation=operation,
                tx_hash=tx_hash,
                timeout=self.transaction_timeout,
            )
            raise TransactionTimeoutError(
                f"Transaction confirmation timeout: {tx_hash}", tx_hash=tx_hash
            ) from e

        if receipt["status"] == 0:
            logger.error(
                "story_client.transaction_reverted",
                operation=operation,
                tx_hash=tx_hash,
                block_number=receipt["blockNumber"],
                gas_used=receipt["gasUsed"],
            )
            raise TransactionRevertError(f"Transaction reverted: {tx_hash}")

        logger.info(
            "story_client.transaction_confirmed",
            operation=operation,
            tx_hash=tx_hash,
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
        )
        return tx_hash, receipt

    def _sign_and_send(
        self,
        fn: Any,
        operation: str,
        gas_limit: int,
        max_fee_per_gas: int,
        max_priority_fee_per_gas: int,
    ) -> str:
        try:
            nonce = self.w3.eth.get_transaction_count(self.address, "pending")
            transaction = fn.build_transaction(
                {
                    "from": self.address,
                    "nonce": nonce,
                    "gas": gas_limit,
                    "maxFeePerGas": max_fee_per_gas,
                    "maxPriorityFeePerGas": max_priority_fee_per_gas,
                    "chainId": self.w3.eth.chain_id,
                }  # type: ignore[arg-type]
            )
            signed_txn = self.w3.eth.account.sign_transaction(
                transaction, private_key=self.private_key
            )
            tx_hash = self.w3.eth.send_raw_transaction(signed_txn.raw_transaction)
        except Exception as e:
            logger.error(
                "story_client.transaction_submission_failed", operation=operation, error=str(e)
            )
            raise TransactionSubmissionError(f"Transaction submission failed: {str(e)}") from e

        tx_hash_hex = tx_hash.hex()
        if not tx_hash_hex.startswith("0x"):
            tx_hash_hex = "0x" + tx_hash_hex
        logger.info(
            "story_client.transaction_submitted",
            operation=operation,
            tx_hash=tx_hash_hex,
            nonce=nonce,
            gas_limit=gas_limit,
        )
        return tx_hash_hex


def create_story_client(settings) -> StoryRegistrationClient | None:
    """Build the registration client from settings.

    Returns:
        Client instance, or None when the backend wallet is not configured
    """
    if not settings.story_configured:
        logger.warning("story_client.not_configured")
        return None

    w3 = Web3(Web3.HTTPProvider(settings.story_rpc_url))
    return StoryRegistrationClient(
        w3=w3,
        private_key=settings.story_private_key,
        spg_nft_contract=settings.story_spg_nft_contract,
        derivative_workflows_address=settings.story_derivative_workflows_address,
        registration_workflows_address=settings.story_registration_workflows_address,
        licensing_module_address=settings.story_licensing_module_address,
        license_template_address=settings.story_license_template_address,
        ip_asset_registry_address=settings.story_ip_asset_registry_address,
        gas_buffer_percentage=settings.story_gas_buffer,
        transaction_timeout=settings.transaction_timeout_seconds,
    )
