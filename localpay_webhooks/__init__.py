"""LocalPay outbound webhook delivery core.

Signs, dispatches, retries and audits event notifications sent to
merchant-registered HTTP endpoints.
"""

__version__ = "1.0.0"
