# Minimal WaveX NFT ABI: only what the pass service reads or submits.

def _fn(name, inputs, outputs, mutability="view"):
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": inputs,
        "outputs": outputs,
    }


def _arg(name, type_, indexed=None):
    out = {"name": name, "type": type_}
    if indexed is not None:
        out["indexed"] = indexed
    return out


TOKEN_ID = _arg("tokenId", "uint256")

WAVEX_NFT_ABI = [
    _fn("tokenBalance", [TOKEN_ID], [_arg("", "uint256")]),
    _fn("ownerOf", [TOKEN_ID], [_arg("", "address")]),
    _fn("getTransactionCount", [TOKEN_ID], [_arg("", "uint256")]),
    _fn(
        "getTransaction",
        [TOKEN_ID, _arg("index", "uint256")],
        [
            {
                "name": "",
                "type": "tuple",
                "components": [
                    _arg("timestamp", "uint256"),
                    _arg("merchant", "address"),
                    _arg("amount", "uint256"),
                    _arg("transactionType", "string"),
                    _arg("metadata", "string"),
                ],
            }
        ],
    ),
    _fn("getTokenEvents", [TOKEN_ID], [_arg("", "uint256[]")]),
    _fn(
        "events",
        [_arg("eventId", "uint256")],
        [
            _arg("name", "string"),
            _arg("price", "uint256"),
            _arg("capacity", "uint256"),
            _arg("soldCount", "uint256"),
            _arg("active", "bool"),
            _arg("eventType", "uint8"),
        ],
    ),
    _fn("authorizedMerchants", [_arg("merchant", "address")], [_arg("", "bool")]),
    _fn(
        "processPayment",
        [TOKEN_ID, _arg("amount", "uint256"), _arg("metadata", "string")],
        [_arg("", "bool")],
        mutability="nonpayable",
    ),
    {
        "type": "event",
        "name": "BalanceUpdated",
        "anonymous": False,
        "inputs": [
            _arg("tokenId", "uint256", True),
            _arg("newBalance", "uint256", False),
            _arg("updateType", "string", False),
        ],
    },
    {
        "type": "event",
        "name": "TransactionRecorded",
        "anonymous": False,
        "inputs": [
            _arg("tokenId", "uint256", True),
            _arg("transactionType", "string", False),
            _arg("amount", "uint256", False),
        ],
    },
    {
        "type": "event",
        "name": "EventPurchased",
        "anonymous": False,
        "inputs": [
            _arg("tokenId", "uint256", True),
            _arg("eventId", "uint256", True),
        ],
    },
]

LEDGER_EVENT_NAMES = ("BalanceUpdated", "TransactionRecorded", "EventPurchased")
