# run.py
import uvicorn
import os
import sys

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from ezhost.core.config import PORT, HOST

if __name__ == "__main__":
    print(f"===========================================================")
    print(f" EZHOST SERVER MANAGER STARTING...")
    print(f" API URL: http://{HOST}:{PORT}")
    print(f"===========================================================")

    # "ezhost:create_app" refers to the create_app factory in ezhost/__init__.py
    uvicorn.run(
        "ezhost:create_app",
        host=HOST,
        port=PORT,
        factory=True
    )
