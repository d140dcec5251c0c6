"""RPC layer -- Solana block source via solana-py."""

from omnipair_indexer.rpc.client import RpcClient
from omnipair_indexer.rpc.solana_client import SolanaRpcClient

__all__ = ["RpcClient", "SolanaRpcClient"]
