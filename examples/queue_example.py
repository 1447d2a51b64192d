"""
asbclient - Queue Example

Sends a few messages to a queue, then peek-locks them: the first is
unlocked and received again, the rest are deleted.

Usage:
    export ASB_NAMESPACE=... ASB_KEY_NAME=... ASB_KEY_VALUE=...
    python examples/queue_example.py orders
"""

import sys

from asbclient import MessageRequest, ServiceBusClient
from asbclient.core import load_settings, setup_logging


def main(queue: str):
    settings = load_settings()
    setup_logging(settings.logging.level)

    with ServiceBusClient(settings.identity(), timeout=settings.http_timeout) as client:
        print(f"Sending messages to '{queue}'...")
        for order_id in (1001, 1002, 1003):
            client.send(queue, MessageRequest(
                body=f"Order {order_id}",
                label="order",
                properties={"order_id": order_id},
            ))
        print("Sent 3 messages\n")

        # Unlocked messages go back to the queue with DeliveryCount + 1
        message = client.peek_lock_message(queue, timeout=10)
        if message is not None:
            print(f"Unlocking '{message.text()}' (delivery {message.delivery_count})")
            client.unlock(message)

        while True:
            message = client.peek_lock_message(queue, timeout=5)
            if message is None:
                break
            print(f"Received '{message.text()}' (delivery {message.delivery_count})")
            client.delete_message(message)

    print("\nQueue drained")


if __name__ == "__main__":
    main(sys.argv[1] if len(sys.argv) > 1 else "orders")
