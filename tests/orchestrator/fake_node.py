"""Stand-in node executable: ``fake_node.py validator <config.toml>``.

Behaviour is steered by an optional ``[fake]`` table in the config, or by
``FAKE_NODE_MODE`` for a whole binary:

* ``fail_fast``      print an error and exit before becoming ready
* ``never_ready``    keep running without printing the readiness marker
* ``ignore_sigterm`` only SIGKILL ends the process
* ``crash_after``    seconds after readiness to exit with ``exit_code``
"""
import os
import signal
import sys
import time
import tomllib


def main(argv):
    if len(argv) < 3 or argv[1] != "validator":
        print("usage: fake_node validator <config.toml>", file=sys.stderr)
        return 2
    with open(argv[2], "rb") as handle:
        config = tomllib.load(handle)
    fake = dict(config.get("fake", {}))
    mode = os.environ.get("FAKE_NODE_MODE")
    if mode:
        fake[mode] = True

    print(f"starting node bound to {config.get('network', {}).get('bind_address')}", flush=True)
    if fake.get("fail_fast"):
        print("fatal: invalid configuration", flush=True)
        return int(fake.get("exit_code", 3))

    if fake.get("ignore_sigterm"):
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    else:
        signal.signal(signal.SIGTERM, lambda *_: sys.exit(0))

    if not fake.get("never_ready"):
        print("Node is ready", flush=True)

    crash_after = fake.get("crash_after")
    started = time.monotonic()
    beat = 0
    while True:
        if crash_after is not None and time.monotonic() - started >= float(crash_after):
            print("panic: simulated failure", flush=True)
            return int(fake.get("exit_code", 101))
        print(f"heartbeat {beat}", flush=True)
        beat += 1
        time.sleep(0.1)


if __name__ == "__main__":
    sys.exit(main(sys.argv))
