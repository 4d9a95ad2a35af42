"""
Apps package - runnable services.

- rebalancer: portfolio rebalancing loop for one T-Invest account
"""
