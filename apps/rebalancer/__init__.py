"""
Rebalancer service.

Runs rebalancing cycles for one T-Invest account: builds the target
allocation, plans lot deltas and places the orders in SELL ->
PRIORITY_BUY -> REMAINDER phases through a retrying brokerage gateway.
"""
