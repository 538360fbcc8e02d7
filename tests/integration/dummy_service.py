import os
import sys
import time


def main():
    """
    Pretends to be a service: warms up, writes a ``ready`` marker in its
    working directory and keeps running until terminated.
    """
    warmup = float(sys.argv[1]) if len(sys.argv) > 1 else 0.0
    print(f"Dummy service starting, APP_ENV={os.environ.get('APP_ENV')}", flush=True)
    time.sleep(warmup)
    with open("ready", "w") as f:
        f.write(str(os.getpid()))
    print("Dummy service ready.", flush=True)
    while True:
        time.sleep(0.5)


if __name__ == "__main__":
    main()
