"""
Scripts Package.

Command-line runners for the perps history pipeline.

Scripts:
- fetch_trade_history: Reconstruct one wallet's trade history as JSON
"""
