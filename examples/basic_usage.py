"""examples/basic_usage.py - callmap integration demo.

Records one payment flow and prints the resulting document to stdout:
    - the ``events`` list holds call/return pairs, including the raised error
    - the ``classMap`` lists only the methods that actually ran

Run:
    python examples/basic_usage.py
"""

import logging

from callmap import Config, Package, StreamExporter, record

# ---------------------------------------------------------------------------
# Standard logger setup (callmap logs its own warnings through it)
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

# ---------------------------------------------------------------------------
# Configuration: hook everything defined in this file
# ---------------------------------------------------------------------------
config = Config(name="payments", packages=[Package(path=__file__)])


class InsufficientFunds(Exception):
    pass


class Wallet:
    def __init__(self, balance: int) -> None:
        self.balance = balance

    def withdraw(self, amount: int) -> int:
        if amount > self.balance:
            raise InsufficientFunds(f"balance={self.balance}, amount={amount}")
        self.balance -= amount
        return self.balance


def pay(wallet: Wallet, amount: int) -> bool:
    try:
        wallet.withdraw(amount)
    except InsufficientFunds:
        return False
    return True


if __name__ == "__main__":
    with record(config, name="pay twice", exporter=StreamExporter(indent=2)) as recording:
        wallet = Wallet(3_000)
        pay(wallet, 1_000)
        pay(wallet, 5_000)

    print()
    print(f"{len(recording.events)} events from {len(recording.methods)} methods")
