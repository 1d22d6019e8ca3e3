"""Pure rules for the shared session: movement budgets and fog-of-war.

Kept free of FastAPI concerns and locking so both the server and tests can
re-derive results from the same inputs.
"""
