"""
mock_payment_gateway.py — Mock Implementation of the Paystack Gateway (REST API)

This module provides a simulated payment gateway for running the gateway flow locally.
It exposes a simple FastAPI application that mimics the Paystack endpoints the order
service calls, and lets a developer fire signed webhooks back at the service.

Simulation Scenarios:
    • Session initialization (authorization URL returned, metadata remembered)
    • Successful charge (signed 'charge.success' webhook)
    • Failed charge (signed 'charge.failed' webhook)
    • Duplicate delivery (simulate the same reference twice)

Endpoints:
    POST /transaction/initialize — Opens a payment session.
    POST /simulate/{reference}    — Sends a signed webhook for a known session.

Port:
    Default: 8001 (HTTP)
"""

import hashlib
import hmac
import json
import logging
import os
import time
from typing import Any, Dict, Literal, Optional

import httpx
from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel

SECRET_KEY = os.environ.get("PAYSTACK_SECRET_KEY", "sk_test_mock")
WEBHOOK_URL = os.environ.get("WEBHOOK_URL", "http://localhost:8000/api/orders/webhook")

app = FastAPI(title="Mock Paystack Gateway")
logging.basicConfig(level=logging.INFO)

# reference -> initialize payload
SESSIONS: Dict[str, Dict[str, Any]] = {}


class InitializeRequest(BaseModel):
    """
    Represents a transaction initialization payload.

    Attributes:
        email (str): Customer email.
        amount (int): Amount in minor units (kobo).
        reference (str): Caller-chosen transaction reference.
        callback_url (str | None): Redirect target after payment.
        metadata (dict): Opaque data echoed back in webhooks.
    """
    email: str
    amount: int
    reference: str
    callback_url: Optional[str] = None
    metadata: Dict[str, Any] = {}


class SimulateRequest(BaseModel):
    outcome: Literal["success", "failed"] = "success"
    message: str = "Declined"


def _now():
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def build_event(session: Dict[str, Any], outcome: str, message: str = "Declined") -> Dict[str, Any]:
    """Builds the webhook body Paystack would send for a session."""
    data = {
        "reference": session["reference"],
        "amount": session["amount"],
        "customer": {"email": session["email"]},
        "metadata": session["metadata"],
    }
    if outcome == "success":
        data["paid_at"] = _now()
        return {"event": "charge.success", "data": data}
    data["failed_at"] = _now()
    data["gateway_response"] = {"message": message}
    return {"event": "charge.failed", "data": data}


@app.post("/transaction/initialize")
def initialize_transaction(request: InitializeRequest, authorization: str = Header(...)):
    """
    Opens a payment session.

    Returns:
        dict: Paystack-shaped response with authorization_url, access_code and reference.

    Raises:
        HTTPException(401): If no bearer secret is sent.
        HTTPException(400): If the amount is not positive.
    """
    if not authorization.startswith("Bearer ") or not authorization[len("Bearer "):]:
        raise HTTPException(status_code=401, detail={"status": False, "message": "Invalid key"})
    if request.amount <= 0:
        raise HTTPException(status_code=400, detail={"status": False, "message": "Invalid amount"})

    SESSIONS[request.reference] = request.model_dump()
    logging.info(f"[PSK] Session opened for {request.reference} ({request.amount} kobo).")
    return {
        "status": True,
        "message": "Authorization URL created",
        "data": {
            "authorization_url": f"https://checkout.mock/{request.reference}",
            "access_code": f"ac_{request.reference[-9:]}",
            "reference": request.reference,
        },
    }


@app.post("/simulate/{reference}")
def simulate_payment(reference: str, request: SimulateRequest):
    """
    Sends a signed webhook for a remembered session to WEBHOOK_URL.

    Calling it twice with the same reference simulates an at-least-once redelivery.
    """
    session = SESSIONS.get(reference)
    if session is None:
        raise HTTPException(status_code=404, detail="Unknown reference")

    body = json.dumps(build_event(session, request.outcome, request.message)).encode()
    signature = hmac.new(SECRET_KEY.encode(), body, hashlib.sha512).hexdigest()
    response = httpx.post(WEBHOOK_URL, content=body, timeout=10.0, headers={
        "Content-Type": "application/json",
        "x-paystack-signature": signature,
    })
    logging.info(f"[PSK] Webhook for {reference} delivered, service answered HTTP {response.status_code}.")
    return {"reference": reference, "webhookStatus": response.status_code}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8001)
