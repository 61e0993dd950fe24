#!/usr/bin/env python3
"""
Controller simulator: posts status, pushes readings, polls commands and
reports them completed, like the relay board would.

    python simulate_device.py --base-url http://localhost:8000 --device ESP32_HIDRO_001
"""
import argparse
import random
import time

import httpx


def run(base_url: str, device_id: str, interval: float, cycles: int, fail_rate: float):
    relays = [False] * 16
    with httpx.Client(base_url=base_url, timeout=10.0) as client:
        for cycle in range(cycles):
            client.post("/api/v1/device/status", json={
                "device_id": device_id,
                "relay_states": relays,
                "wifi_rssi": random.randint(-75, -45),
                "free_heap": random.randint(150000, 200000),
                "uptime_seconds": int(cycle * interval),
                "firmware_version": "sim-1.0",
            }).raise_for_status()

            client.post("/api/v1/sensors/ingest", json={
                "device_id": device_id,
                "readings": {
                    "ph": round(random.uniform(5.4, 6.6), 2),
                    "tds": round(random.uniform(600, 900), 1),
                    "temp_water": round(random.uniform(19, 24), 1),
                    "water_level_ok": True,
                },
            }).raise_for_status()

            response = client.get("/api/v1/commands", params={"device_id": device_id, "status": "pending"})
            response.raise_for_status()
            for command in response.json()["commands"]:
                if random.random() < fail_rate:
                    payload = {"command_id": command["id"], "status": "failed", "error_message": "Simulated relay fault"}
                else:
                    relays[command["relay_number"]] = command["action"] == "on"
                    payload = {"command_id": command["id"], "status": "completed"}
                client.put("/api/v1/commands", json=payload).raise_for_status()
                print(f"[{cycle}] relay {command['relay_number']} {command['action']} -> {payload['status']}")

            time.sleep(interval)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Simulate a poll-based relay controller")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--device", default="ESP32_HIDRO_001")
    parser.add_argument("--interval", type=float, default=5.0)
    parser.add_argument("--cycles", type=int, default=60)
    parser.add_argument("--fail-rate", type=float, default=0.0)
    args = parser.parse_args()
    run(args.base_url, args.device, args.interval, args.cycles, args.fail_rate)
