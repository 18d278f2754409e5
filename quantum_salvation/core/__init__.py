"""Core narrative primitives (simulated clock, event channels, error taxonomy).

Kept free of FastAPI and Redis concerns so they can be reused by the API, tests, and
any other driver of the game loop.
"""
