"""swapmarket: calendar slot swap marketplace.

Users mark slots as swappable, propose swaps against other users' slots,
and the recipient accepts (ownership is exchanged) or rejects.
"""

__version__ = "0.1.0"
