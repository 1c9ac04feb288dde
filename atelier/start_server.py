#!/usr/bin/env python3
"""
Server startup wrapper for the metering service.
"""
import os
import sys

# Add repository root to path
root_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, root_dir)

if __name__ == "__main__":
    import uvicorn

    print("[Atelier] Starting metering service")
    print(f"[Atelier] Server: http://localhost:{os.getenv('PORT', '8000')}")
    try:
        uvicorn.run(
            "atelier.main:app",
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
            reload=False,
            log_level="info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n[Atelier] Shutting down...")
        sys.exit(0)
