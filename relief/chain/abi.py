from typing import Any

# Minimal ABIs for the contracts the saga touches.

ERC20_ABI: list[dict[str, Any]] = [
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "transfer",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

TOKEN_MESSENGER_ABI: list[dict[str, Any]] = [
    {
        "name": "depositForBurn",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "amount", "type": "uint256"},
            {"name": "destinationDomain", "type": "uint32"},
            {"name": "mintRecipient", "type": "bytes32"},
            {"name": "burnToken", "type": "address"},
        ],
        "outputs": [{"name": "_nonce", "type": "uint64"}],
    },
]

MESSAGE_TRANSMITTER_ABI: list[dict[str, Any]] = [
    {
        "name": "receiveMessage",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "message", "type": "bytes"},
            {"name": "attestation", "type": "bytes"},
        ],
        "outputs": [{"name": "success", "type": "bool"}],
    },
    {
        "name": "MessageSent",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "message", "type": "bytes", "indexed": False},
        ],
    },
]

YIELD_CONTROLLER_ABI: list[dict[str, Any]] = [
    {
        "name": "deployToAave",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "marketId", "type": "bytes32"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "positionId", "type": "bytes32"}],
    },
    {
        "name": "withdrawFromAave",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "positionId", "type": "bytes32"}],
        "outputs": [
            {"name": "principal", "type": "uint256"},
            {"name": "yield", "type": "uint256"},
        ],
    },
    {
        "name": "transferUSDC",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "name": "Deployed",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "positionId", "type": "bytes32", "indexed": True},
            {"name": "marketId", "type": "bytes32", "indexed": False},
            {"name": "amount", "type": "uint256", "indexed": False},
        ],
    },
    {
        "name": "Withdrawn",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "positionId", "type": "bytes32", "indexed": True},
            {"name": "principal", "type": "uint256", "indexed": False},
            {"name": "yield", "type": "uint256", "indexed": False},
        ],
    },
]

SWAP_ROUTER_ABI: list[dict[str, Any]] = [
    {
        "name": "exactInputSingle",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {
                "name": "params",
                "type": "tuple",
                "components": [
                    {"name": "tokenIn", "type": "address"},
                    {"name": "tokenOut", "type": "address"},
                    {"name": "fee", "type": "uint24"},
                    {"name": "recipient", "type": "address"},
                    {"name": "amountIn", "type": "uint256"},
                    {"name": "amountOutMinimum", "type": "uint256"},
                    {"name": "sqrtPriceLimitX96", "type": "uint160"},
                ],
            }
        ],
        "outputs": [{"name": "amountOut", "type": "uint256"}],
    },
]

TREASURY_VAULT_ABI: list[dict[str, Any]] = [
    {
        "name": "recordYield",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "marketId", "type": "bytes32"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "name": "getTotalYield",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "marketId", "type": "bytes32"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

MARKET_ABI: list[dict[str, Any]] = [
    {
        "name": "getMarketInfo",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [
            {
                "name": "",
                "type": "tuple",
                "components": [
                    {"name": "marketId", "type": "bytes32"},
                    {"name": "question", "type": "string"},
                    {"name": "disasterType", "type": "string"},
                    {"name": "location", "type": "string"},
                    {"name": "startTime", "type": "uint256"},
                    {"name": "endTime", "type": "uint256"},
                    {"name": "state", "type": "uint8"},
                    {"name": "policyId", "type": "bytes32"},
                    {"name": "eligibleNGOs", "type": "bytes32[]"},
                ],
            }
        ],
    },
]

MARKET_FACTORY_ABI: list[dict[str, Any]] = [
    {
        "name": "forceCloseMarket",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "marketId", "type": "bytes32"}],
        "outputs": [],
    },
    {
        "name": "resolveMarket",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "marketId", "type": "bytes32"}],
        "outputs": [],
    },
    {
        "name": "emergencyWithdraw",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [],
    },
]

PAYOUT_EXECUTOR_ABI: list[dict[str, Any]] = [
    {
        "name": "calculatePayouts",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "market", "type": "address"}],
        "outputs": [{"name": "", "type": "bytes32"}],
    },
    {
        "name": "getWinnerPayouts",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "marketId", "type": "bytes32"}],
        "outputs": [
            {
                "name": "",
                "type": "tuple[]",
                "components": [
                    {"name": "user", "type": "address"},
                    {"name": "principal", "type": "uint256"},
                    {"name": "reward", "type": "uint256"},
                ],
            }
        ],
    },
    {
        "name": "getLoserPayouts",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "marketId", "type": "bytes32"}],
        "outputs": [
            {
                "name": "",
                "type": "tuple[]",
                "components": [
                    {"name": "user", "type": "address"},
                    {"name": "principal", "type": "uint256"},
                ],
            }
        ],
    },
    {
        "name": "getNGOPayouts",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "marketId", "type": "bytes32"}],
        "outputs": [
            {
                "name": "",
                "type": "tuple[]",
                "components": [
                    {"name": "ngoId", "type": "bytes32"},
                    {"name": "circleWalletId", "type": "string"},
                    {"name": "amount", "type": "uint256"},
                    {"name": "chainId", "type": "uint256"},
                ],
            }
        ],
    },
]

BRIDGE_MANAGER_ABI: list[dict[str, Any]] = [
    {
        "name": "initiateBridge",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "marketId", "type": "bytes32"},
            {"name": "amount", "type": "uint256"},
            {"name": "destinationChainId", "type": "uint256"},
            {"name": "attestationId", "type": "string"},
        ],
        "outputs": [{"name": "", "type": "bytes32"}],
    },
]


def event_signature(abi: list[dict[str, Any]], event_name: str) -> str:
    for entry in abi:
        if entry.get("type") == "event" and entry.get("name") == event_name:
            types = ",".join(item["type"] for item in entry.get("inputs", []))
            return f"{event_name}({types})"
    raise KeyError(f"event {event_name} not in abi")
