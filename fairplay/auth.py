from fastapi import Header, HTTPException
import os
from dotenv import load_dotenv

load_dotenv()

API_KEY = os.getenv("FAIRPLAY_API_KEY")


async def get_api_key(x_api_key: str = Header(..., alias="x-api-key")):
    """
    Validate API key from x-api-key header.
    With FAIRPLAY_API_KEY unset every key is accepted (local development).
    """
    if API_KEY and x_api_key != API_KEY:
        raise HTTPException(status_code=403, detail="Invalid API Key")
    return x_api_key
