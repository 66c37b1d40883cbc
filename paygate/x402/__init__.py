# paygate/x402/__init__.py
"""
x402 Payment Protocol gate for the proxy.

Every request under /proxy/{resourceId} passes through here before it is
forwarded to the resource's origin.

Key components:
- challenge: 402 Payment Required bodies and the PAYMENT-REQUIRED header
- verifier: checks a presented proof against the requirement it answers
- settlement: moves the funds on-chain and watches for confirmation
- ledger: one record per paymentId, the only shared mutable state
- gate: ties the above together per request
- middleware: FastAPI middleware that maps gate decisions to responses
- audit: transaction audit logging

Configuration is loaded once by paygate.core.config and passed in.
"""

__version__ = "0.1.0"
