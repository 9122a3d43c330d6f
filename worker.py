# File: worker.py
import asyncio
import uuid
from dotenv import load_dotenv, find_dotenv

from inbox_triage.db import init_db
from inbox_triage.service import create_triage_service

load_dotenv(find_dotenv())

# Simulate a queue
EMAIL_QUEUE = [
    ("Order never arrived", "billing@shop.example", "I paid for order 5512 two weeks ago and it never arrived. Please help."),
    ("Login error", "dev@partner.io", "Since this morning every login fails with error 500. This is blocking our team."),
    ("Thanks!", "happy@client.org", "Just wanted to say the new dashboard is excellent. Great work."),
    ("Weekly digest", "noreply@news.example", "Your weekly digest is ready. Unsubscribe at any time."),
    ("Question about pricing", "lead@startup.dev", "How does pricing work for teams above 50 seats?"),
]

CONCURRENCY = 3


async def process_email_job(service, semaphore: asyncio.Semaphore, job: tuple, worker_id: int):
    """
    Simulates a worker picking up a job from the queue.
    """
    subject, sender, body = job
    session_id = str(uuid.uuid4())
    email_data = {
        "id": f"queue-{worker_id}",
        "body": body,
        "metadata": {"subject": subject, "from": sender},
    }

    async with semaphore:
        print(f"👷 Worker-{worker_id}: Picked up job [Session: {session_id[:8]}]")
        result = await service.process(email_data, session_id=session_id)

    label = result.classification.category if result.classification else result.status
    print(f"✅ Worker-{worker_id}: Finished. Result: {label.upper()}")
    return result


async def run_worker_pool():
    print("🚀 STARTING ASYNC WORKER POOL...")
    init_db()
    service = create_triage_service()
    semaphore = asyncio.Semaphore(CONCURRENCY)

    try:
        results = await asyncio.gather(*(
            process_email_job(service, semaphore, job, i + 1)
            for i, job in enumerate(EMAIL_QUEUE)
        ))
    finally:
        await service.shutdown()

    completed = sum(1 for r in results if r.status == "completed")
    print(f"🏁 ALL JOBS PROCESSED. {completed}/{len(results)} completed.")


if __name__ == "__main__":
    asyncio.run(run_worker_pool())
