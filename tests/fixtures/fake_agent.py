"""Stand-in for the agent CLI used by the test suite.

Usage: fake_agent.py SCENARIO [agent args...]

SCENARIO is a JSON file with a list of responses; the Nth invocation
replays response N (the last one repeats). Each invocation records its
stdin and arguments next to the scenario.
"""

import json
import sys
import time
from pathlib import Path


def main() -> int:
    scenario_path = Path(sys.argv[1])
    scenario = json.loads(scenario_path.read_text())
    calls_file = scenario_path.with_suffix(".calls")
    calls = int(calls_file.read_text()) if calls_file.exists() else 0
    calls_file.write_text(str(calls + 1))

    prompt = sys.stdin.read()
    scenario_path.with_suffix(".prompt").write_text(prompt)
    scenario_path.with_suffix(".args").write_text(json.dumps(sys.argv[2:]))

    responses = scenario["responses"]
    response = responses[min(calls, len(responses) - 1)]
    for name in response.get("touch", []):
        Path(name).write_text(f"written by call {calls + 1}\n")
    if response.get("sleep"):
        time.sleep(response["sleep"])

    sys.stdout.write(response.get("stdout", ""))
    sys.stderr.write(response.get("stderr", ""))
    return int(response.get("exit_code", 0))


if __name__ == "__main__":
    sys.exit(main())
