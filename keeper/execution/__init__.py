"""On-chain execution adapters (paper and web3)."""

from .interfaces import KeeperClient, KeeperError
from .paper import PaperKeeperClient
from .web3_keeper import Web3KeeperClient

__all__ = ["KeeperClient", "KeeperError", "PaperKeeperClient", "Web3KeeperClient"]
