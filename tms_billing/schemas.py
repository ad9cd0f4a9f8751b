from pydantic import BaseModel
from typing import Any, Dict, Optional, Union
from datetime import datetime


class RazorpayCreateOrderRequest(BaseModel):
    amount: float  # major units
    currency: str = "INR"
    receipt: Optional[str] = None
    notes: Optional[Dict[str, str]] = None


class RazorpayCreateSubscriptionRequest(BaseModel):
    plan_id: Optional[str] = None
    amount: Optional[float] = None  # major units; a cached plan is created for it
    currency: str = "INR"
    interval: str = "monthly"
    plan_name: Optional[str] = None
    total_count: int = 12
    customer_notify: int = 1
    user_id: Optional[str] = None
    include_trial: bool = False
    trial_seconds: Optional[int] = None
    trial_days: Optional[int] = None


class TrialSubscriptionRequest(BaseModel):
    user_id: Optional[str] = None
    plan_type: str = "monthly"
    startup_count: Optional[int] = None


class StopAutopayRequest(BaseModel):
    subscription_id: Optional[str] = None
    user_id: Optional[str] = None


class CleanupCustomerRequest(BaseModel):
    customer_id: Optional[str] = None


class PaymentVerifyRequest(BaseModel):
    provider: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    razorpay_order_id: Optional[str] = None
    razorpay_subscription_id: Optional[str] = None
    razorpay_signature: Optional[str] = None
    paypal_order_id: Optional[str] = None
    paypal_subscription_id: Optional[str] = None
    paypal_payer_id: Optional[str] = None
    user_id: Optional[str] = None
    plan_id: Optional[Union[int, str]] = None
    assignment_id: Optional[int] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    interval: str = "monthly"
    country: Optional[str] = None
    tax_percentage: Optional[float] = None
    tax_amount: Optional[float] = None
    total_amount_with_tax: Optional[float] = None


class PayPalCreateOrderRequest(BaseModel):
    amount: float
    currency: str = "EUR"
    user_id: Optional[str] = None
    plan_id: Optional[Union[int, str]] = None
    assignment_id: Optional[int] = None
    description: Optional[str] = None


class PayPalCreateSubscriptionRequest(BaseModel):
    user_id: Optional[str] = None
    final_amount: Optional[float] = None
    interval: str = "monthly"
    plan_name: str = "TrackMyStartup Subscription"
    currency: str = "EUR"


class PlanChangeRequest(BaseModel):
    user_id: Optional[str] = None
    new_plan_tier: Optional[str] = None
    country: Optional[str] = None


class RecordSubscriptionRequest(BaseModel):
    user_id: Optional[str] = None
    razorpay_subscription_id: Optional[str] = None
    plan_type: str = "monthly"
    startup_count: Optional[int] = None
    trial_end: Optional[datetime] = None


class VerifyResponse(BaseModel):
    success: bool
    message: str
    payment_id: Optional[str] = None
    subscription_id: Optional[str] = None


class SubscriptionResponse(BaseModel):
    id: str
    user_id: str
    plan_id: Optional[int] = None
    plan_tier: str
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    interval: str
    payment_gateway: Optional[str] = None
    is_in_trial: Optional[bool] = None
    autopay_enabled: Optional[bool] = None
    mandate_status: Optional[str] = None
    razorpay_subscription_id: Optional[str] = None
    paypal_subscription_id: Optional[str] = None
    billing_cycle_count: int = 0
    total_paid: float = 0
    previous_plan_tier: Optional[str] = None
    previous_subscription_id: Optional[str] = None
    storage_used_mb: Optional[float] = None

    class Config:
        from_attributes = True


class PlanChangeResponse(BaseModel):
    success: bool = True
    change_type: str
    message: str
    subscription: Optional[SubscriptionResponse] = None
    old_subscription: Optional[SubscriptionResponse] = None
    gateway_subscription: Optional[Dict[str, Any]] = None


class SubscriptionStatusResponse(BaseModel):
    status: str
    plan_tier: str
    is_in_trial: bool
    trial_end: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    autopay_enabled: bool
    mandate_status: Optional[str] = None
