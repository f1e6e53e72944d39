"""ERC20 Transfer Indexer.

Polls a JSON-RPC provider for ERC20 ``Transfer`` events of a single token
contract, stores them in an append-only ledger and serves them through a
cursor-paginated query API.
"""

__version__ = "0.1.0"
