import asyncio
import sys

from realtime.client import ChatClient, TypingTracker


async def async_input(prompt: str) -> str:
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(None, input, prompt)


def print_event(event: dict) -> None:
    print(f"Received: {event}")


async def test_websocket(uri: str, user_id: int):
    client = ChatClient(uri)
    tracker = TypingTracker()
    tracker.attach(client)
    for type in (
        "connected", "authenticated", "new_message", "message_updated",
        "message_reacted", "message_reaction_removed", "user_status", "error"
    ):
        client.on(type, print_event)

    await client.connect(user_id)
    last_conversation = 0
    try:
        while True:
            line = await async_input("<conversation id> <message>: ")
            conversation_id, _, content = line.partition(" ")
            if not conversation_id.isdecimal():
                typing = tracker.typing_users(last_conversation)
                print(f"Typing in {last_conversation}: {typing}")
                continue
            last_conversation = int(conversation_id)
            sent = await client.send_message(last_conversation, content)
            print("Sent!" if sent else f"Queued ({client.state.value})")
    finally:
        await client.disconnect()


if __name__ == "__main__":
    uri = sys.argv[1] if len(sys.argv) > 1 else "ws://localhost:6169/ws"
    user_id = int(sys.argv[2]) if len(sys.argv) > 2 else 1
    asyncio.run(test_websocket(uri, user_id))
