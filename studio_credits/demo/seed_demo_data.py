# studio_credits/demo/seed_demo_data.py

from studio_credits.config.loader import default_settings
from studio_credits.core.client import build_client
from studio_credits.storage.models import PaymentEvent, utcnow
from studio_credits.storage.repository import initialize_schema

DEMO_IDENTITY = "demo-user"


def seed_demo_data(database=None):
    settings = default_settings(database)
    initialize_schema(settings.database)
    client = build_client(settings)

    client.request_balance(DEMO_IDENTITY)

    invocation = client.invoke_tool(DEMO_IDENTITY, "architectural_rendering", 20)
    client.report_outcome(invocation.job_id, success=True)

    # left pending: the next sweep past the threshold refunds it
    client.invoke_tool(DEMO_IDENTITY, "interior_design", 15)

    client.apply_payment(PaymentEvent(
        payment_id="demo-payment-1",
        identity=DEMO_IDENTITY,
        plan_id="plan_pro",
        amount=599000,
        currency="VND",
        delivered_at=utcnow(),
    ))
    return client


if __name__ == "__main__":
    client = seed_demo_data()
    print("Demo credit data inserted, balance:", client.request_balance(DEMO_IDENTITY))
