import os
import sys

import requests


def check(endpoint: str, validate) -> bool:
    url = f"{BASE_URL}{endpoint}"
    try:
        res = requests.get(url, timeout=10)
    except requests.RequestException:
        print(f"FAIL {endpoint}: request error")
        return False
    if res.status_code != 200:
        print(f"FAIL {endpoint}: HTTP {res.status_code}")
        return False
    problem = validate(res.json())
    if problem:
        print(f"FAIL {endpoint}: {problem}")
        return False
    print(f"OK   {endpoint}")
    return True


def _health(body: dict):
    if body.get("status") != "ok":
        return f"status={body.get('status')}"
    return None


def _workflow(body: dict):
    states = set(body.get("states") or [])
    missing = {"DRAFT", "APPROVED", "CANCELLED"} - states
    if missing:
        return "estados ausentes: " + ", ".join(sorted(missing))
    if not body.get("transitions"):
        return "nenhuma transicao publicada"
    return None


BASE_URL = os.getenv("OSFLOW_API_BASE_URL", "http://127.0.0.1:8000/api")

ok = True
ok = check("/health", _health) and ok
ok = check("/service-orders/workflow", _workflow) and ok

sys.exit(0 if ok else 1)
