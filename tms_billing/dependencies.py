from functools import lru_cache

from fastapi import Depends, HTTPException, Request
from sqlalchemy.engine import Engine

from tms_billing.config import Settings, get_settings
from tms_billing.database import engine
from tms_billing.exceptions import ConfigurationError
from tms_billing.gateways.paypal import PayPalClient, PayPalStrategy
from tms_billing.gateways.razorpay import RazorpayClient, RazorpayStrategy
from tms_billing.models import GATEWAY_PAYPAL, GATEWAY_RAZORPAY
from tms_billing.subscriptions import GatewayFactory
from tms_billing.utils.rate_limiter import check_ip_rate_limit


def get_app_settings() -> Settings:
    return get_settings()


def get_engine() -> Engine:
    return engine


@lru_cache(maxsize=1)
def _shared_paypal_client() -> PayPalClient:
    # One instance per process so the OAuth token is reused until it expires.
    return PayPalClient(get_settings())


def get_razorpay_client(settings: Settings = Depends(get_app_settings)) -> RazorpayClient:
    return RazorpayClient(settings)


def get_paypal_client(settings: Settings = Depends(get_app_settings)) -> PayPalClient:
    if settings is get_settings():
        return _shared_paypal_client()
    return PayPalClient(settings)


def get_razorpay_strategy(client: RazorpayClient = Depends(get_razorpay_client)) -> RazorpayStrategy:
    return RazorpayStrategy(client)


def get_paypal_strategy(client: PayPalClient = Depends(get_paypal_client)) -> PayPalStrategy:
    return PayPalStrategy(client)


def get_gateway_factory(
    razorpay: RazorpayStrategy = Depends(get_razorpay_strategy),
    paypal: PayPalStrategy = Depends(get_paypal_strategy),
) -> GatewayFactory:
    strategies = {GATEWAY_RAZORPAY: razorpay, GATEWAY_PAYPAL: paypal}

    def factory(gateway: str):
        try:
            return strategies[(gateway or GATEWAY_RAZORPAY).lower()]
        except KeyError:
            raise ConfigurationError(f"Unsupported payment gateway: {gateway}") from None

    return factory


def enforce_rate_limit_or_429(
    request: Request,
    settings: Settings,
    db_engine: Engine,
    scope: str,
    limit: int,
    window_seconds: int,
    user_id: str | None = None,
) -> None:
    allowed, retry_after = check_ip_rate_limit(
        request=request,
        settings=settings,
        scope=scope,
        limit=limit,
        window_seconds=window_seconds,
        engine=db_engine,
        user_id=user_id,
    )
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail="Too many requests. Please try again later.",
            headers={"Retry-After": str(retry_after)},
        )
