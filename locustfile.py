"""
Locust workload definitions for the localization experiment backend.

Available tags (choose with ``--tags``):
* **sticky** – a fixed pool of users; a response naming a different payload than
  that user's first response is reported as a failure.
* **unique** – a fresh user id on every request (spreads load over all buckets).

    locust -f locustfile.py --host http://localhost:3000 --tags sticky
"""

from __future__ import annotations

import uuid
from random import choice
from typing import Dict, List

import requests
from locust import FastHttpUser, between, events, tag, task

# Static test data
STICKY_USERS: List[str] = [f"locust-user-{i}" for i in range(200)]

# First payload name seen per sticky user (shared by all simulated users)
FIRST_SEEN: Dict[str, str] = {}


class ExperimentUser(FastHttpUser):
    wait_time = between(0.01, 0.10)  # 10–100 ms think time

    @task(4)
    @tag("sticky")
    def sticky_experiment(self):
        user_id = choice(STICKY_USERS)
        with self.client.post(
            "/experiment",
            json={"userId": user_id},
            name="/experiment (sticky)",
            catch_response=True,
        ) as resp:
            if resp.status_code != 200:
                resp.failure(f"Unexpected: {resp.status_code}")
                return
            name = resp.json().get("selectedPayloadName")
            expected = FIRST_SEEN.setdefault(user_id, name)
            if name != expected:
                resp.failure(f"{user_id} moved from {expected} to {name}")
            else:
                resp.success()

    @task(1)
    @tag("unique")
    def unique_experiment(self):
        self.client.post(
            "/experiment",
            json={"userId": f"locust-{uuid.uuid4()}"},
            name="/experiment (unique)",
        )


# One‑time liveness probe before the swarm starts
@events.test_start.add_listener
def _probe_health(environment, **_):
    url = f"{environment.parsed_options.host}/health"
    try:
        resp = requests.get(url, timeout=5)
        resp.raise_for_status()
        print(f"[health] {resp.json().get('message', 'ok')}")
    except requests.RequestException as exc:
        print(f"[health] ERROR probing {url}: {exc}")
