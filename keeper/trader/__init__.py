"""
Keeper loop package.

The process entrypoint remains `main.py` at the repo root. Event replay, trigger
evaluation and the action scheduler live here so each phase can be tested
without a node.
"""
