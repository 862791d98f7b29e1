"""moonwatch - admission, risk gating and swap execution for new-token trading."""

__version__ = "0.1.0"
