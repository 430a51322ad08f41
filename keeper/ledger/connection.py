import logging

from eth_account import Account
from web3 import Web3

logger = logging.getLogger(__name__)

RPC_CONNECT_TIMEOUT = 30


class LedgerConnection:
    """JSON-RPC connection to the chain plus the (optional) keeper signer."""

    def __init__(self, rpc_url: str, private_key: str | None = None, request_timeout: float = RPC_CONNECT_TIMEOUT):
        self.rpc_url = rpc_url
        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        self.account = Account.from_key(private_key) if private_key else None
        self._chain_id: int | None = None

    @property
    def address(self) -> str | None:
        return self.account.address if self.account is not None else None

    @property
    def read_only(self) -> bool:
        return self.account is None

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = int(self.w3.eth.chain_id)
        return self._chain_id

    def connect(self) -> bool:
        """
        Verify the RPC endpoint answers.

        Returns:
            True if connected, False otherwise
        """
        try:
            head = self.w3.eth.block_number
            logger.info(
                f"Connected to {self.rpc_url} (chainId={self.chain_id}, head={head}, "
                f"signer={self.address or 'read-only'})"
            )
            return True
        except Exception as e:
            logger.error(f"Failed to connect to RPC {self.rpc_url}: {type(e).__name__}: {e}")
            return False

