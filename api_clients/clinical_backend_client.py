"""
Clinical backend API client for reading patient clinical records.
"""
import os
import logging
from typing import Optional

import httpx

# get clinical backend environment variables
CLINICAL_BACKEND_API_BASE_URL = os.getenv("CLINICAL_BACKEND_API_BASE_URL")
CLINICAL_BACKEND_SESSION_TOKEN = os.getenv("CLINICAL_BACKEND_SESSION_TOKEN")
CLINICAL_BACKEND_ENV = os.getenv("CLINICAL_BACKEND_ENVIRONMENT", "dev")


class ClinicalBackendClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        session_token: Optional[str] = None,
        *,
        timeout: float = 30.0,
    ):
        self.base_url = base_url or CLINICAL_BACKEND_API_BASE_URL
        self.session_token = session_token or CLINICAL_BACKEND_SESSION_TOKEN
        if not self.base_url or not self.session_token:
            raise ValueError(
                f"###### [Clinical backend] base URL/session token not set for environment: {CLINICAL_BACKEND_ENV}"
            )
        self.base_url = self.base_url.rstrip("/")
        self.timeout = timeout

        self.headers = {
            "content-type": "application/json",
            "x-session-token": self.session_token
        }

    async def _make_request(self, method: str, endpoint: str, params=None, json_data=None):
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        timeout = httpx.Timeout(self.timeout, connect=10.0)

        try:
            async with httpx.AsyncClient(follow_redirects=True, timeout=timeout) as client:
                response = await client.request(
                    method=method.upper(),
                    url=url,
                    params=params,
                    json=json_data,
                    headers=self.headers
                )
                logging.info(f"Request {url} completed with status: {response.status_code}")
                response.raise_for_status()
                return response.json() if response.text else {}
        except httpx.TimeoutException as e:
            logging.error(f"Timeout error calling clinical backend {method} {url}: {e}")
            raise
        except httpx.RequestError as e:
            logging.error(f"Request error calling clinical backend {method} {url}: {e}")
            raise
        except httpx.HTTPStatusError as e:
            logging.error(f"HTTP error calling clinical backend {method} {url}: {e}")
            logging.error(f"Response status: {e.response.status_code}")
            logging.error(f"Response text: {e.response.text}")
            raise

