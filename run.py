"""
RUN SCRIPT - Start the S.A.G.E server
=====================================

PURPOSE:
  Single entry point to start the backend.

WHAT IT DOES:
  - Runs app.main:app with uvicorn on host 0.0.0.0 (accept connections from any interface).
  - Port comes from the PORT environment variable (default 8000).
  - reload=True restarts the server when Python files change (handy for development).

USAGE:
  python run.py

  API docs: http://localhost:8000/docs

NOTE:
  Before running, set GROQ_API_KEY, CONTENT_API_URL and CONTENT_API_TOKEN in .env
  (QUOTA_API_URL too if the quota service lives elsewhere).
"""

import os

import uvicorn

# ------------------------------------------------------------------------------
# ENTRY POINT
# ------------------------------------------------------------------------------
if __name__ == "__main__":
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=True
    )
