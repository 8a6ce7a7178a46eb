"""Conflux eSpace network constants."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

Network = Literal["testnet", "mainnet"]


@dataclass(frozen=True)
class NetworkConfig:
    name: Network
    chain_id: int
    default_rpc_url: str
    rpc_env_var: str
    swappi_router: str  # UniswapV2-compatible router
    wcfx: str  # wrapped CFX, the intermediary for multi-hop quotes
    coingecko_platform: str = "conflux"


NETWORKS: dict[str, NetworkConfig] = {
    "testnet": NetworkConfig(
        name="testnet",
        chain_id=71,
        default_rpc_url="https://evmtestnet.confluxrpc.com",
        rpc_env_var="CONFLUX_ESPACE_TESTNET_RPC",
        swappi_router="0x873789aaf553fd0b4252d0d2b72c6331c47aff2e",
        wcfx="0x2ed3dddae5b2f321af0806181fbfa6d049be47d8",
    ),
    "mainnet": NetworkConfig(
        name="mainnet",
        chain_id=1030,
        default_rpc_url="https://evm.confluxrpc.com",
        rpc_env_var="CONFLUX_ESPACE_MAINNET_RPC",
        swappi_router="0xE37B52296b0bAA91412cD0Cd97975B0805037B84",
        wcfx="0x14b2d3bc65e74dae1030eafd8ac30c533c976a9b",
    ),
}
