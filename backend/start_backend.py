#!/usr/bin/env python3
"""
Backend startup wrapper for the Multi-AI payments API.
"""
import os
import sys

# Add workspace to path
workspace_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if workspace_root not in sys.path:
    sys.path.insert(0, workspace_root)


def main():
    import uvicorn

    port = int(os.getenv("PORT", "3000"))
    print("[Backend] Starting Multi-AI payments backend")
    print(f"[Backend] Server: http://localhost:{port}")
    print("[Backend] Press CTRL+C to stop")

    try:
        uvicorn.run(
            "backend.main:app",
            host=os.getenv("HOST", "0.0.0.0"),
            port=port,
            reload=False,
            log_level="info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n[Backend] Shutting down...")
        sys.exit(0)


if __name__ == "__main__":
    main()
