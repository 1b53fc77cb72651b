from app.api.main import app

if __name__ == "__main__":
    import os
    import uvicorn
    host = os.getenv("INGEST_HOST", "0.0.0.0")
    port = int(os.getenv("INGEST_PORT", "8000"))
    uvicorn.run(app, host=host, port=port)
