import asyncio
import uuid
from dotenv import load_dotenv, find_dotenv

from inbox_triage.db import init_db
from inbox_triage.events import EventDispatcher, WILDCARD
from inbox_triage.service import create_triage_service

# Load provider keys
load_dotenv(find_dotenv())

SCENARIOS = [
    (
        "Production Outage",
        {
            "id": "demo-outage-001",
            "body": (
                "Hi team, our checkout page has been down since 9am and customers "
                "cannot complete orders. This is urgent, please fix it ASAP."
            ),
            "metadata": {
                "subject": "URGENT: checkout is broken",
                "from": "ops@customer.io",
                "to": "support@company.com",
                "userId": "user-42",
            },
        },
    ),
    (
        "Feature Request",
        {
            "id": "demo-feature-002",
            "body": "Would it be possible to export reports as CSV? That would save us a lot of time.",
            "metadata": {"subject": "Feature request: CSV export", "from": "jane@client.org"},
        },
    ),
    (
        "Spam Filter",
        {
            "id": "demo-spam-003",
            "body": "Congratulations! You won $1000. Click here to claim your free iPhone now!",
            "metadata": {"subject": "You are a WINNER", "from": "promo@deals.example"},
        },
    ),
]


def print_event(event):
    print(f"   📣 {event.name}")


async def run_scenario(service, email_data: dict, scenario_name: str):
    print(f"\n\n🚀 STARTING SCENARIO: {scenario_name}")
    print("=" * 60)
    print(f"📩 Subject: {email_data['metadata'].get('subject')}")

    session_id = str(uuid.uuid4())
    print(f"🕵️ SESSION ID: {session_id}")

    result = await service.process(email_data, session_id=session_id)

    print("\n#################################################")
    print(f"✅ RESULT ({scenario_name}): {result.status.upper()}")
    print("#################################################")
    if result.filter_result:
        print(f"🚫 Filtered: {result.filter_result.reasoning}")
    if result.classification:
        c = result.classification
        print(f"🏷️  {c.priority} / {c.category} ({c.confidence:.2f})")
    if result.summary:
        print(f"📝 Summary: {result.summary.summary}")
    if result.reply_draft:
        print(f"✉️  Draft ({result.reply_draft.tone}):\n{result.reply_draft.body}")
    if result.error:
        print(f"🚨 Error at {result.error.stage}: {result.error.message}")
    print("#################################################\n")


async def main():
    init_db()
    dispatcher = EventDispatcher()
    dispatcher.subscribe(WILDCARD, print_event)
    service = create_triage_service(dispatcher=dispatcher)

    try:
        for name, email_data in SCENARIOS:
            await run_scenario(service, email_data, name)

        # Same id again inside the dedup window
        await run_scenario(service, SCENARIOS[0][1], "Duplicate Delivery")
    finally:
        await service.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
