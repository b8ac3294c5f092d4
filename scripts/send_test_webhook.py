import os
import json
import requests
from dotenv import load_dotenv

# Load .env variables
load_dotenv()

BASE_URL = os.getenv("LOCALMAN_URL", "http://127.0.0.1:5000")
PROJECT = os.getenv("DEFAULT_PROJECT_ID", "default")

# Payload to send
payload = {
    "webhook": "test",
    "data": {"value": 123}
}

resp = requests.post(
    f"{BASE_URL}/webhook",
    params={"project": PROJECT},
    headers={"Content-Type": "application/json", "X-Test-Event": "ping"},
    data=json.dumps(payload).encode("utf-8"),
    timeout=10,
)

print("Status:", resp.status_code)
print("Response:", resp.json())

unread = requests.get(f"{BASE_URL}/api/projects/{PROJECT}/webhooks/unread", timeout=10)
print("Unread:", unread.json().get("unread"))
