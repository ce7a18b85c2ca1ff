#!/usr/bin/env python3
"""
Seed script — creates a realistic dataset for exercising the feed lanes.

Creates:
  • 6 memorials spread over a few cities (each announces itself in the
    community activity lane)
  • 4-6 tributes per memorial, a few of them videos
  • Likes and impressions, enough for some videos to reach the global lane
  • Follows and donation statements

Run after docker compose up:
  python scripts/seed_data.py --api-url http://localhost:8000

All IDs are printed so you can use them in curl commands.
"""
import argparse
import json
import random
import time
import urllib.request
import urllib.error
from dataclasses import dataclass


MEMORIALS = [
    ("Ada Lovelace", "sunrise", ["poetry", "mathematics"], (51.5007, -0.1246, "GB")),
    ("Grace Hopper", "ocean", ["navy", "computing"], (40.7128, -74.0060, "US")),
    ("Alan Turing", "forest", ["running", "mathematics"], (53.4808, -2.2426, "GB")),
    ("Katherine Johnson", "stars", ["space", "mathematics"], (37.0871, -76.3452, "US")),
    ("Rosalind Franklin", "meadow", ["science", "photography"], (51.5072, -0.1276, "GB")),
    ("Hedy Lamarr", "dusk", ["film", "invention"], (48.2082, 16.3738, "AT")),
]

TRIBUTES = [
    "Still thinking of you every morning.",
    "Found the old photos from the lake house today.",
    "Your garden is blooming again this spring.",
    "We played your favourite song at dinner.",
    "Happy birthday. We lit a candle for you.",
    "The kids asked about your stories again.",
    "A year already. It doesn't feel real.",
    "Made your recipe tonight. Not quite the same.",
    "Walked your old route along the river.",
    "Thank you for everything you taught us.",
]

TAGS = ["garden", "music", "family", "travel", "recipes", "photos"]

USERS = [f"user-{i:02d}" for i in range(1, 21)]


@dataclass
class ApiClient:
    base_url: str

    def post(self, path: str, data: dict) -> dict:
        url = f"{self.base_url}{path}"
        body = json.dumps(data).encode()
        req = urllib.request.Request(
            url, data=body, headers={"Content-Type": "application/json"}, method="POST"
        )
        try:
            with urllib.request.urlopen(req, timeout=10) as resp:
                raw = resp.read()
                return json.loads(raw) if raw else {}
        except urllib.error.HTTPError as e:
            body = e.read().decode()
            print(f"  HTTP {e.code} on POST {path}: {body}")
            return {}

    def get(self, path: str) -> dict:
        url = f"{self.base_url}{path}"
        req = urllib.request.Request(url, method="GET")
        try:
            with urllib.request.urlopen(req, timeout=10) as resp:
                return json.loads(resp.read())
        except urllib.error.HTTPError as e:
            print(f"  HTTP {e.code} on GET {path}")
            return {}


def wait_for_api(client: ApiClient, retries: int = 15) -> None:
    print(f"Waiting for API at {client.base_url} ...")
    for _ in range(retries):
        try:
            if client.get("/health").get("status") == "ok":
                print("  API is ready!\n")
                return
        except (urllib.error.URLError, OSError):
            pass
        time.sleep(3)
    raise RuntimeError(f"API not reachable at {client.base_url} after {retries} retries")


def main(api_url: str) -> None:
    client = ApiClient(api_url)
    wait_for_api(client)

    # ── Memorials ─────────────────────────────────────────────────────────
    print("Creating memorials...")
    memorials: list[dict] = []
    for name, theme, tags, (lat, lng, country) in MEMORIALS:
        result = client.post("/memorials/", {
            "display_name": name,
            "owner_user_id": random.choice(USERS),
            "theme": theme,
            "tags": tags,
            "lat": lat,
            "lng": lng,
            "country": country,
            "bio_summary": f"Remembering {name}",
        })
        if result.get("id"):
            memorials.append(result)
            print(f"  ✓ {name} ({result['id']})")
        else:
            print(f"  ✗ Failed to create {name}")

    if not memorials:
        print("No memorials created — aborting")
        return

    # ── Tributes ──────────────────────────────────────────────────────────
    print("\nCreating tributes...")
    posts: list[dict] = []
    for memorial in memorials:
        for _ in range(random.randint(4, 6)):
            is_video = random.random() < 0.3
            result = client.post("/posts/", {
                "author_id": random.choice(USERS),
                "memorial_id": memorial["id"],
                "caption": random.choice(TRIBUTES),
                "tags": random.sample(TAGS, k=random.randint(0, 2)),
                "media_type": "video" if is_video else "image",
                "media_url": f"https://cdn.example/{'clip.mp4' if is_video else 'photo.jpg'}",
                "media_duration_ms": 45_000 if is_video else None,
            })
            if result.get("id"):
                posts.append(result)
    print(f"  ✓ {len(posts)} tributes created")

    # ── Engagement ────────────────────────────────────────────────────────
    print("\nAdding likes and impressions...")
    likes = 0
    for post in posts:
        boost = post["media_type"] == "video" and random.random() < 0.6
        for user_id in random.sample(USERS, k=random.randint(6, 12) if boost else random.randint(0, 4)):
            client.post(f"/posts/{post['id']}/like", {"user_id": user_id})
            likes += 1
    for _ in range(40):
        client.post("/posts/impressions", {
            "user_id": random.choice(USERS),
            "post_ids": [p["id"] for p in random.sample(posts, k=min(10, len(posts)))],
        })
    print(f"  ✓ {likes} likes added")

    # ── Follows & donations ───────────────────────────────────────────────
    print("\nFollowing memorials and recording donations...")
    for user_id in USERS:
        for memorial in random.sample(memorials, k=min(2, len(memorials))):
            client.post(f"/memorials/{memorial['id']}/follow", {"user_id": user_id})
    for memorial in memorials:
        donor = random.choice(USERS)
        client.post("/activity/", {
            "type": "DONATION",
            "memorial_id": memorial["id"],
            "actor_user_id": donor,
            "audience_tags": ["FOLLOWING", "MEMORIAL"],
            "template_payload": {
                "actor": {"id": donor, "displayName": donor.replace("-", " ").title()},
                "donation": {"id": f"don-{memorial['id'][:8]}", "amountCents": random.choice([500, 2500, 10000]), "currency": "USD"},
                "target": {"id": memorial["id"], "displayName": memorial["display_name"]},
            },
        })
    for memorial in memorials:
        client.post(f"/feed/memorial/{memorial['id']}/rebuild", {})
    print("  ✓ Follows, donations and lane rebuilds done")

    # ── Print summary ─────────────────────────────────────────────────────
    print("\n" + "=" * 60)
    print("Seed complete! Here are some commands to try:\n")
    m = memorials[0]
    u = USERS[0]
    print(f"# Tributes for '{m['display_name']}':")
    print(f"  curl -s '{api_url}/feed/memorial/{m['id']}?user_id={u}' | python3 -m json.tool\n")
    print("# High-engagement videos:")
    print(f"  curl -s '{api_url}/feed/global' | python3 -m json.tool\n")
    print("# Activity near London:")
    print(f"  curl -s '{api_url}/feed/activity/community?lat=51.5007&lng=-0.1246' | python3 -m json.tool\n")
    print(f"# Activity addressed to {u}:")
    print(f"  curl -s '{api_url}/feed/activity/personal?user_id={u}' | python3 -m json.tool\n")
    print("# Check Jaeger traces: http://localhost:16686")
    print("# Check Prometheus: http://localhost:9090")
    print("=" * 60)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed the Memorial Feed system")
    parser.add_argument("--api-url", default="http://localhost:8000", help="API base URL")
    args = parser.parse_args()
    main(args.api_url)
