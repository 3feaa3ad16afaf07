# api/index.py
# Vercel serverless entrypoint: every route is rewritten here (see vercel.json)

from dupkite.app import app  # noqa: F401
