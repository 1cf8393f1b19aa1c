#!/usr/bin/env python3
"""
Local journey probe: starts the platform simulator, runs every configured
scenario once against it and stops the simulator again.
"""

import argparse
import os
import subprocess
import sys
import time
from pathlib import Path
from typing import List


class Colors:
    """ANSI color codes for terminal output"""
    RED = '\033[0;31m'
    GREEN = '\033[0;32m'
    YELLOW = '\033[1;33m'
    CYAN = '\033[0;36m'
    NC = '\033[0m'

    @staticmethod
    def is_supported():
        return sys.stdout.isatty() and os.name != 'nt'


def say(message: str, color: str = Colors.CYAN, stream=sys.stdout) -> None:
    if Colors.is_supported():
        message = f"{color}{message}{Colors.NC}"
    print(message, file=stream)


def uv_python(args: List[str]) -> List[str]:
    return ['uv', 'run', 'python'] + args


def main():
    parser = argparse.ArgumentParser(
        description='Run the journey probe against the local platform simulator',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/run-local-probe.py
  python scripts/run-local-probe.py --config configs/probe.yaml --simulator-config configs/simulator.yaml
  python scripts/run-local-probe.py --output-format json --keep-simulator
        """
    )
    parser.add_argument('--config', default='configs/probe.yaml', help='Probe configuration (default: configs/probe.yaml)')
    parser.add_argument('--simulator-config', default='configs/simulator.yaml',
                        help='Simulator configuration (default: configs/simulator.yaml)')
    parser.add_argument('--output-dir', default='artifacts/probe-runs', help='Run artifact directory')
    parser.add_argument('--output-format', choices=['auto', 'rich', 'plain', 'json'], default='auto',
                        help='Output format (default: auto)')
    parser.add_argument('--startup-wait', type=float, default=2.0, help='Seconds to wait for the simulator')
    parser.add_argument('--keep-simulator', action='store_true', help='Keep the simulator running afterwards')
    args = parser.parse_args()

    repo_root = Path(__file__).resolve().parent.parent
    os.chdir(repo_root)

    env = os.environ.copy()
    env['CONSOLE_OUTPUT_FORMAT'] = args.output_format
    env['PYTHONPATH'] = os.pathsep.join([
        str(repo_root / 'apps' / 'probe-engine'),
        str(repo_root / 'apps' / 'webhook-ingress'),
        str(repo_root / 'apps' / 'platform-simulator'),
    ])

    say("=== Local Journey Probe ===")
    print(f"Probe config:     {args.config}")
    print(f"Simulator config: {args.simulator_config}")
    print(f"Output:           {args.output_dir} ({args.output_format})")
    print()

    simulator = None
    exit_code = 0
    try:
        say("[1/2] Starting platform simulator in background")
        simulator_log = repo_root / 'platform-simulator.log'
        with open(simulator_log, 'w') as log_file:
            simulator = subprocess.Popen(
                uv_python(['apps/platform-simulator/platform_simulator/main.py', '--config', args.simulator_config]),
                cwd=repo_root,
                env=env,
                stdout=log_file,
                stderr=subprocess.STDOUT,
            )
        time.sleep(args.startup_wait)
        if simulator.poll() is not None:
            say("Simulator failed to start. Log output:", Colors.RED, sys.stderr)
            print(simulator_log.read_text())
            sys.exit(1)

        say("[2/2] Running journey probe")
        result = subprocess.run(
            uv_python([
                'apps/probe-engine/journey_probe/main.py', 'run',
                '--config', args.config,
                '--output-dir', args.output_dir,
            ]),
            cwd=repo_root,
            env=env,
        )
        exit_code = result.returncode
        if exit_code == 0:
            say(f"\nAll journeys healthy; artifacts in {args.output_dir}", Colors.GREEN)
        else:
            say(f"\nUnhealthy journey detected (exit code {exit_code}); see {args.output_dir}", Colors.RED, sys.stderr)
    except KeyboardInterrupt:
        say("\nInterrupted by user", Colors.YELLOW)
        exit_code = 130
    finally:
        if simulator and not args.keep_simulator:
            say("\nStopping platform simulator...")
            simulator.terminate()
            try:
                simulator.wait(timeout=5)
            except subprocess.TimeoutExpired:
                simulator.kill()
        elif simulator:
            say(f"\nPlatform simulator is still running (PID: {simulator.pid})", Colors.YELLOW)

    sys.exit(exit_code)


if __name__ == '__main__':
    main()
