"""Finance Chat package.

A chat-first bookkeeping assistant: backend functions served by
``functions_server.py`` and a Streamlit client in ``app.py``.
"""
