#!/usr/bin/env python3
"""
Local development server for the Ecosystem Analytics API.
"""

import os
import sys
from pathlib import Path

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

# Add src to Python path
current_dir = Path(__file__).parent
src_dir = current_dir / "src"
sys.path.insert(0, str(src_dir))

os.environ.setdefault('APP_ENV', 'dev')
# Without DATABASE_URL or SUPABASE_PROJECT_REF/SUPABASE_DB_PASSWORD the API
# uses a local SQLite file (SQLITE_PATH) and creates its tables on startup.
if not os.getenv('DATABASE_URL') and not (os.getenv('SUPABASE_PROJECT_REF') and os.getenv('SUPABASE_DB_PASSWORD')):
    print("NOTE: no DATABASE_URL or Supabase configuration, using local SQLite")

if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("API_PORT", "8000"))
    print("Starting Ecosystem Analytics API")
    print(f"Docs: http://localhost:{port}/docs")
    print(f"Health Check: http://localhost:{port}/health")
    print("Press Ctrl+C to stop\n")

    uvicorn.run(
        "ecosystem_analytics.api.main:app",
        host=os.getenv("API_HOST", "0.0.0.0"),
        port=port,
        reload=True,
        log_level="info"
    )
