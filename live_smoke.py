#!/usr/bin/env python3
"""
Quick live check of a running POWER-IGR instance.
Walks one cascade level, then cancels, and verifies no Chromium is left behind.

Usage: python live_smoke.py [base_url]
"""

import sys
import time

import psutil
import requests

BASE_URL = 'http://localhost:3000'


def count_chromium():
    """Count Chromium processes on this machine"""
    count = 0
    for proc in psutil.process_iter(['name']):
        name = (proc.info.get('name') or '').lower()
        if 'chromium' in name or 'chrome' in name:
            count += 1
    return count


def main(base_url=BASE_URL):
    print("🧪 POWER-IGR - Live Smoke Test")
    print("=" * 60)

    print("\n1. Initial State:")
    chromium_before = count_chromium()
    print(f"   Chromium processes: {chromium_before}")

    print("\n2. Portal Health:")
    health = requests.get(f'{base_url}/api/health', timeout=10).json()
    print(f"   Portal: {health['portal']['status']}")
    print(f"   Sessions: {health['liveSessions']}/{health['maxSessions']}")
    if not health['allowNewSessions']:
        print("   ⚠️  Portal unavailable, nothing more to check")
        return 1

    print("\n3. District Options:")
    response = requests.get(f'{base_url}/api/options/district', timeout=300)
    result = response.json()
    if response.status_code != 200 or not result.get('success'):
        print(f"   ❌ {response.status_code}: {result.get('message')}")
        return 1
    print(f"   ✅ {len(result['options'])} districts, session {result.get('sessionId')}")

    print("\n4. Cancel:")
    cancelled = requests.post(f'{base_url}/api/cancel',
                              json={'session_id': result.get('sessionId')}, timeout=60).json()
    print(f"   {cancelled['message']}")
    time.sleep(2)

    print("\n5. Verification:")
    chromium_after = count_chromium()
    if chromium_after == chromium_before:
        print("   ✅ No Chromium process leaks")
    else:
        print(f"   ⚠️  Chromium count changed: {chromium_before} → {chromium_after}")
        return 1

    print("\n" + "=" * 60)
    print("✅ Live smoke test PASSED")
    return 0


if __name__ == '__main__':
    sys.exit(main(sys.argv[1] if len(sys.argv) > 1 else BASE_URL))
