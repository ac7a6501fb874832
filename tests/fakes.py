SIGNER = "0x" + "5a" * 20
VAULT = "0x" + "7b" * 20
ROUTER = "0x" + "3c" * 20
USDC = "0x" + "11" * 20
AUSD = "0x" + "22" * 20


class FakeChain:
    """In-memory stand-in for ``ChainClient``: balances, canned receipts and logs."""

    def __init__(self, address=SIGNER, *, allowance=10**30, block=1_000):
        self.address = address
        self.allowance = allowance
        self.block = block
        self.balances = {}
        self.transactions = []
        self.handlers = {}
        self.failures = {}
        self.logs = []
        self.failing_ranges = set()
        self.log_queries = []

    def set_balance(self, token, amount, owner=None):
        self.balances[(token.lower(), (owner or self.address).lower())] = int(amount)

    def add_balance(self, token, amount, owner=None):
        key = (token.lower(), (owner or self.address).lower())
        self.balances[key] = self.balances.get(key, 0) + int(amount)

    async def block_number(self):
        return self.block

    async def token_balance(self, token, owner=None):
        return self.balances.get((token.lower(), (owner or self.address).lower()), 0)

    async def read(self, address, abi, fn_name, *args):
        if fn_name == "allowance":
            return self.allowance
        raise AssertionError(f"unexpected read {fn_name}")

    async def transact(self, address, abi, fn_name, *args, gas_limit=None, label=None, simulate=True):
        self.transactions.append({"address": address, "fn": fn_name, "args": args, "label": label})
        failure = self.failures.get(fn_name)
        if failure is not None:
            raise failure
        handler = self.handlers.get(fn_name)
        receipt = dict(handler(*args)) if handler else {}
        receipt.setdefault("transactionHash", "0x" + format(len(self.transactions), "064x"))
        return receipt

    def decode_events(self, receipt, abi, event_name):
        return list((receipt.get("events") or {}).get(event_name, []))

    async def get_logs(self, address, abi, event_name, from_block, to_block):
        self.log_queries.append((from_block, to_block))
        if (from_block, to_block) in self.failing_ranges:
            raise RuntimeError("request timeout")
        return [
            log
            for log in self.logs
            if log.get("event", event_name) == event_name and from_block <= log["block_number"] <= to_block
        ]

    def calls(self, fn_name):
        return [tx for tx in self.transactions if tx["fn"] == fn_name]


async def no_sleep(_seconds):
    return None
