"""Automation keeper for Conflux eSpace.

Polls stored limit order and DCA jobs, checks them against the safety rules
and Swappi prices, and executes due jobs through the AutomationManager
contract.
"""

__version__ = "0.1.0"
