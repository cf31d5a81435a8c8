"""examples/multithreaded_usage.py - Concurrent threads, one recording.

Every event carries the ``thread_id`` of the thread that emitted it, so one
session can hold the calls of many threads at once. Event ids stay unique
and increasing across threads, and each return event names its own call
through ``parent_id``.

Run:
    python examples/multithreaded_usage.py
"""

import logging
import threading
import time
from collections import defaultdict

from callmap import Config, Package, record

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] [thread=%(threadName)s] %(message)s",
)

config = Config(name="order_service", packages=[Package(path=__file__)])


# ---------------------------------------------------------------------------
# Business logic
# ---------------------------------------------------------------------------


class Inventory:
    STOCK = {1: 10, 2: 0, 3: 5}

    def fetch(self, product_id: int) -> int:
        time.sleep(0.01)  # simulate DB latency
        return self.STOCK.get(product_id, 0)


class OrderService:
    def place(self, order_id: int, product_id: int, qty: int) -> dict:
        if Inventory().fetch(product_id) < qty:
            raise RuntimeError(f"OutOfStock: product_id={product_id}")
        return {"order_id": order_id, "status": "confirmed"}


def worker(order_id: int, product_id: int, qty: int) -> None:
    try:
        OrderService().place(order_id, product_id, qty)
    except RuntimeError:
        pass


if __name__ == "__main__":
    with record(config, name="concurrent orders") as recording:
        threads = [
            threading.Thread(target=worker, args=(1001, 1, 3), name="Thread-A"),
            threading.Thread(target=worker, args=(1002, 2, 1), name="Thread-B"),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

    by_thread = defaultdict(list)
    for event in recording.events:
        by_thread[event.thread_id].append(event.to_dict())

    for thread_id, events in by_thread.items():
        print(f"thread {thread_id}:")
        for e in events:
            if e["event"] == "call":
                print(f"  #{e['id']} call   {e['defined_class']}.{e['method_id']}")
            elif "exceptions" in e:
                print(f"  #{e['id']} raise  {e['exceptions'][0]['class']} (call #{e['parent_id']})")
            else:
                print(f"  #{e['id']} return (call #{e['parent_id']})")
