# paygate/agent/__init__.py
"""
Agent side: paying for proxied resources from an ERC-4337 smart account.

- calls: ABI-encoded call descriptors (pool pull, approve, payForService)
- operation: batches calls into an EntryPoint v0.7 user operation
- relay: bundler and node JSON-RPC
- submitter: signs, submits and follows an operation to its receipt
- payer: the pay-then-call flow built on top
"""
