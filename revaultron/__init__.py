"""Volatility-gated vault rebalancing.

Per-user vaults hold a native currency and fungible assets. A rebalance
executor watches the volatility index and, when volatility is elevated and a
vault has drifted from its target two-asset allocation, sells the
over-allocated side through a swap venue and records the outcome.

Usage::

    python3 -m revaultron simulate
    python3 -m revaultron hermes-price --feed 0x3728...dfbd
"""

__version__ = "0.1.0"
