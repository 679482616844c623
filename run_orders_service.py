#!/usr/bin/env python3
import os
import sys
import subprocess
import platform
import argparse
import socket
from urllib.parse import urlparse

import uvicorn

SERVICE_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "services", "orders-service")
DEFAULT_PORT = 8003

# --- Colors ---
class Colors:
    HEADER = '\033[95m'
    BLUE = '\033[94m'
    GREEN = '\033[92m'
    WARNING = '\033[93m'
    FAIL = '\033[91m'
    ENDC = '\033[0m'
    BOLD = '\033[1m'

if platform.system() == "Windows":
    os.system('color')

def log(msg, color=Colors.ENDC, bold=False):
    prefix = Colors.BOLD if bold else ""
    print(f"{prefix}{color}{msg}{Colors.ENDC}")

# --- Port Management ---

def get_process_on_port(port):
    """Finds the PID of the process listening on the given port."""
    if platform.system() == "Windows":
        cmd = f'netstat -ano | findstr :{port}'
        result = subprocess.run(cmd, shell=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        for line in result.stdout.strip().split('\n'):
            if f":{port}" in line and "LISTENING" in line:
                return line.strip().split()[-1]
        return None
    try:
        result = subprocess.run(['lsof', '-t', f'-i:{port}'], stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    except FileNotFoundError:
        log("lsof not available, skipping port check", Colors.WARNING)
        return None
    if result.returncode == 0 and result.stdout:
        return result.stdout.strip().split('\n')[0]
    return None

def free_port(port):
    log(f"[1/3] Checking port {port}...", Colors.BLUE, bold=True)
    pid = get_process_on_port(port)
    if not pid:
        log(f"✓ Port {port}: AVAILABLE", Colors.GREEN)
        return
    log(f"✓ Port {port}: IN USE (PID: {pid}), killing", Colors.WARNING)
    if platform.system() == "Windows":
        subprocess.run(f"taskkill /F /PID {pid}", shell=True, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    else:
        subprocess.run(['kill', '-9', str(pid)], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)

# --- Database ---

def check_mongo(url):
    log("\n[2/3] Checking MongoDB...", Colors.BLUE, bold=True)
    parsed = urlparse(url)
    host, port = parsed.hostname or "localhost", parsed.port or 27017
    try:
        with socket.create_connection((host, port), timeout=2):
            pass
    except OSError:
        log(f"❌ MongoDB not reachable at {host}:{port}", Colors.FAIL)
        log("   Transactions need a replica set, or start with --memory", Colors.FAIL)
        sys.exit(1)
    log(f"✓ MongoDB reachable at {host}:{port}", Colors.GREEN)

# --- Main ---

def main():
    parser = argparse.ArgumentParser(description="Start the orders service")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--memory", action="store_true", help="Use in-process stores instead of MongoDB")
    parser.add_argument("--reload", action="store_true", help="Restart on code changes")
    args = parser.parse_args()

    log("\nORDERS SERVICE", Colors.HEADER, bold=True)
    free_port(args.port)

    if args.memory:
        os.environ["STORE_BACKEND"] = "memory"
        log("\n[2/3] Using in-memory stores", Colors.WARNING, bold=True)
    else:
        os.environ.setdefault("STORE_BACKEND", "mongo")
        check_mongo(os.getenv("MONGO_URL", "mongodb://localhost:27017/?replicaSet=rs0"))

    log("\n[3/3] Starting uvicorn...", Colors.BLUE, bold=True)
    log(f"- Swagger UI: {Colors.BLUE}http://localhost:{args.port}/docs{Colors.ENDC}")
    uvicorn.run("app.main:app", host="0.0.0.0", port=args.port, reload=args.reload, app_dir=SERVICE_DIR)

if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        log("\nAborted by user.", Colors.WARNING)
        sys.exit(0)
