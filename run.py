import uvicorn
import os
import sys

from rentalhub.config.settings import settings

if __name__ == "__main__":
    # Ensure usage of the current directory for imports
    sys.path.append(os.path.dirname(os.path.abspath(__file__)))

    print(f"🚀 Starting {settings.APP_NAME} Backend...")
    uvicorn.run("rentalhub.main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
