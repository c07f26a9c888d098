"""
Vercel Serverless Entry Point for the kintone User Sync API
Uses Mangum to adapt FastAPI (ASGI) for serverless environments.
Lifespan is off, so clients are built lazily on first request.
"""

import sys
import os

# Add the parent directory to the path so we can import from the main app
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import app

from mangum import Mangum

handler = Mangum(app, lifespan="off")
