"""
SERVICEHUB - Vercel Serverless API

Wraps the FastAPI application from src/ for serverless deployment.
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "src"))

from mangum import Mangum

from api.server import app

# Vercel handler
handler = Mangum(app, lifespan="auto")
