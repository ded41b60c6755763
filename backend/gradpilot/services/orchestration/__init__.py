"""
Specialist routing and coordination services.

Routes free-form user requests to specialist agents:

- The intent classifier and routing planner turn a message into a plan
- The fallback planner routes by keyword when classification fails
- The execution coordinator runs plan steps under a concurrency strategy
- The credential rotation manager spreads oracle calls over a key pool
"""
