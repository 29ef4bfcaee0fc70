#!/usr/bin/env python3

"""
Development utility for Context Keeper MCP Server
"""

import argparse
import asyncio
import os
import secrets
import subprocess
import sys
from pathlib import Path

import httpx

from config import Config

def run_command(cmd, check=True, env=None):
    """Run a command and stream its output"""
    print(f"🔧 Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, env=env)
    return result.returncode

def run_server():
    """Run the development server with auto-reload"""
    print("🚀 Starting development server...")
    env = dict(os.environ, ENVIRONMENT="development")
    port = env.get("PORT", "3000")
    return run_command(
        [sys.executable, "-m", "uvicorn", "main:app", "--reload", "--host", "0.0.0.0", "--port", port],
        check=False,
        env=env,
    )

def run_tests():
    """Run the pytest suite"""
    print("🧪 Running tests...")
    return run_command([sys.executable, "-m", "pytest", "tests", "-v"], check=False)

def generate_secret_key():
    """Generate a secret key for SECRET_KEY"""
    print("🔑 Generated secret key:")
    print(f"SECRET_KEY={secrets.token_hex(32)}")

def check_env() -> bool:
    """Validate the environment configuration"""
    print("🔍 Checking environment configuration...")
    try:
        config = Config()
    except ValueError as e:
        print(f"❌ Invalid configuration: {e}")
        return False

    print("✅ Environment configuration looks good!")
    print("\n📋 Current configuration:")
    print(f"   Environment: {config.environment}")
    print(f"   Host: {config.host}")
    print(f"   Port: {config.port}")
    print(f"   Base URL: {config.base_url or '(derived from request)'}")
    print(f"   Code expiry: {config.oauth_code_expiry}s")
    print(f"   Token expiry: {config.oauth_token_expiry}s")
    print(f"   Cleanup interval: {config.cleanup_interval}s")
    print(f"   PKCE required: {config.pkce_required}")

    if config.secret_key_generated:
        print("⚠️  SECRET_KEY not set - a random one is generated on every start")
    return True

def status(base_url: str):
    """Show server status"""
    print("📊 Server Status:")

    async def check_health():
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{base_url}/health", timeout=5)
            response.raise_for_status()
            return response.json()

    try:
        health = asyncio.run(check_health())
    except httpx.HTTPError as e:
        print(f"❌ Server at {base_url} is not reachable: {e}")
        return False

    print(f"✅ Server at {base_url} is running")
    print(f"   Status: {health.get('status')}")
    print(f"   Clients: {health.get('clients')}")
    print(f"   Active grants: {health.get('grants')}")
    print(f"   Projects: {health.get('projects')}")
    return True

def main():
    """Main CLI interface"""
    parser = argparse.ArgumentParser(
        description="Development utility for Context Keeper MCP Server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Available commands:
  run         Run development server
  test        Run tests
  secret      Generate secure secret key
  check       Check environment configuration
  status      Show server status

Examples:
  python dev.py run          # Run development server
  python dev.py test         # Run tests
  python dev.py status --url http://localhost:3000
        """
    )

    parser.add_argument(
        "command",
        choices=["run", "test", "secret", "check", "status"],
        help="Command to execute"
    )
    parser.add_argument(
        "--url",
        default="http://localhost:3000",
        help="Base URL of the server for the status command"
    )

    args = parser.parse_args()

    # Change to script directory
    os.chdir(Path(__file__).parent)

    print("🛠️  Context Keeper MCP Server - Development Utility")
    print("=" * 60)

    if args.command == "run":
        sys.exit(run_server())

    elif args.command == "test":
        sys.exit(run_tests())

    elif args.command == "secret":
        generate_secret_key()

    elif args.command == "check":
        sys.exit(0 if check_env() else 1)

    elif args.command == "status":
        sys.exit(0 if status(args.url) else 1)

    else:
        parser.print_help()

if __name__ == "__main__":
    main()
