"""
Main entry point for the media storage service.
"""

import uvicorn

if __name__ == "__main__":
    uvicorn.run("mediavault.app.api:app", host="0.0.0.0", port=8000, reload=True)
