from contextlib import asynccontextmanager

from fastapi import FastAPI

from deyncare_billing.routers import stripe_router, subscription_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    services = getattr(app.state, "services", None)
    if services is not None:
        services.close()


app = FastAPI(title="DeynCare Billing", lifespan=lifespan)

app.include_router(subscription_router.router, prefix="/api/subscriptions")
# Include the Stripe router under the '/api/stripe' prefix
app.include_router(stripe_router.router, prefix="/api/stripe")
