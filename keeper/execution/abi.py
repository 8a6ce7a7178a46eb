"""Minimal ABIs for the contracts the worker talks to."""

from __future__ import annotations

from typing import Any

ERC20_DECIMALS_ABI: list[dict[str, Any]] = [
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"internalType": "uint8", "name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
]

SWAPPI_ROUTER_ABI: list[dict[str, Any]] = [
    {
        "inputs": [
            {"internalType": "uint256", "name": "amountIn", "type": "uint256"},
            {"internalType": "address[]", "name": "path", "type": "address[]"},
        ],
        "name": "getAmountsOut",
        "outputs": [{"internalType": "uint256[]", "name": "amounts", "type": "uint256[]"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "uint256", "name": "amountIn", "type": "uint256"},
            {"internalType": "uint256", "name": "amountOutMin", "type": "uint256"},
            {"internalType": "address[]", "name": "path", "type": "address[]"},
            {"internalType": "address", "name": "to", "type": "address"},
            {"internalType": "uint256", "name": "deadline", "type": "uint256"},
        ],
        "name": "swapExactTokensForTokens",
        "outputs": [{"internalType": "uint256[]", "name": "amounts", "type": "uint256[]"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

_EXECUTE_INPUTS = [
    {"internalType": "bytes32", "name": "jobId", "type": "bytes32"},
    {"internalType": "address", "name": "router", "type": "address"},
    {"internalType": "bytes", "name": "swapCalldata", "type": "bytes"},
]

AUTOMATION_MANAGER_ABI: list[dict[str, Any]] = [
    {
        "inputs": _EXECUTE_INPUTS,
        "name": "executeLimitOrder",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": _EXECUTE_INPUTS,
        "name": "executeDCATick",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]
