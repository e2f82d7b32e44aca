"""Utility that launches a sample MariaDB Docker container for mariaconn."""

from __future__ import annotations

import argparse
import subprocess
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from mariaconn.config import ConnectionOptions, save_options

DEFAULT_CONTAINER = "mariaconn-sample-db"
DEFAULT_PORT = 3307
DEFAULT_ROOT_PASSWORD = "mariaconn-root"
DEFAULT_PASSWORD = "mariaconn"
DEFAULT_DB = "mariaconn_test"
DEFAULT_USER = "mariaconn"
DOCKER_IMAGE = "mariadb:11"


def run(cmd: list[str], *, check: bool = True, **kwargs) -> subprocess.CompletedProcess[str]:
    print("$", " ".join(cmd))
    return subprocess.run(cmd, check=check, text=True, **kwargs)


def container_exists(name: str) -> bool:
    result = subprocess.run(
        ["docker", "ps", "-a", "--filter", f"name={name}", "--format", "{{.ID}}"],
        text=True,
        capture_output=True,
    )
    return bool(result.stdout.strip())


def start_container(name: str, port: int, password: str, database: str, user: str) -> None:
    if container_exists(name):
        print(f"Container '{name}' already exists. Reusing it.")
        run(["docker", "start", name], check=False)
    else:
        run(
            [
                "docker",
                "run",
                "-d",
                "--name",
                name,
                "-e",
                f"MARIADB_ROOT_PASSWORD={DEFAULT_ROOT_PASSWORD}",
                "-e",
                f"MARIADB_DATABASE={database}",
                "-e",
                f"MARIADB_USER={user}",
                "-e",
                f"MARIADB_PASSWORD={password}",
                "-p",
                f"{port}:3306",
                DOCKER_IMAGE,
                "--character-set-server=utf8mb4",
                "--collation-server=utf8mb4_unicode_ci",
            ]
        )
    wait_for_start(name)


def wait_for_start(name: str, retries: int = 30, delay: float = 1.0) -> None:
    for attempt in range(retries):
        result = subprocess.run(
            [
                "docker",
                "exec",
                name,
                "mariadb-admin",
                "ping",
                "-h",
                "localhost",
                "-uroot",
                f"-p{DEFAULT_ROOT_PASSWORD}",
                "--silent",
            ],
            text=True,
            capture_output=True,
        )
        if result.returncode == 0:
            return
        time.sleep(delay)
    print("Warning: database did not report ready state; continuing anyway.")


def seed_data(name: str, database: str, user: str, password: str) -> None:
    sql = """
    CREATE TABLE IF NOT EXISTS test_table (
        id INT PRIMARY KEY AUTO_INCREMENT,
        name VARCHAR(100) NOT NULL,
        value DECIMAL(10, 2) DEFAULT 0.00,
        is_active BOOLEAN DEFAULT TRUE,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP,
        INDEX idx_name (name)
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COLLATE=utf8mb4_unicode_ci;
    CREATE TABLE IF NOT EXISTS transaction_test (
        id INT PRIMARY KEY AUTO_INCREMENT,
        operation VARCHAR(50) NOT NULL,
        amount DECIMAL(10, 2) NOT NULL,
        status ENUM('pending', 'completed', 'cancelled') DEFAULT 'pending',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COLLATE=utf8mb4_unicode_ci;
    INSERT INTO test_table (name, value, is_active)
    SELECT * FROM (
        SELECT 'Test Alpha', 100.50, TRUE UNION ALL
        SELECT 'Test Beta', 200.75, TRUE UNION ALL
        SELECT 'Test Gamma', 300.00, FALSE UNION ALL
        SELECT 'Test Delta', 450.25, TRUE
    ) AS seed
    WHERE NOT EXISTS (SELECT 1 FROM test_table);
    """.strip()

    run(
        [
            "docker",
            "exec",
            "-i",
            name,
            "mariadb",
            f"-u{user}",
            f"-p{password}",
            database,
        ],
        input=sql,
    )


def update_config(port: int, user: str, database: str, password: str) -> str:
    options = ConnectionOptions(
        server="127.0.0.1",
        port=port,
        database=database,
        username=user,
        password=password,
    )
    target = save_options(options)
    print(f"Wrote connection settings to {target}.")
    return options.build_connection_string()


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--container", default=DEFAULT_CONTAINER, help="Docker container name")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="Host port to expose MariaDB on")
    parser.add_argument("--password", default=DEFAULT_PASSWORD, help="Application user password")
    parser.add_argument("--database", default=DEFAULT_DB, help="Database name to create")
    parser.add_argument("--user", default=DEFAULT_USER, help="Application database user")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv or sys.argv[1:])
    try:
        start_container(args.container, args.port, args.password, args.database, args.user)
        seed_data(args.container, args.database, args.user, args.password)
    except FileNotFoundError:
        print("Docker is not installed or not on PATH.")
        return 1
    connection_string = update_config(args.port, args.user, args.database, args.password)
    print("Sample database is ready. Run the integration tests with:")
    print(f'    MARIACONN_TEST_DSN="{connection_string}" pytest tests/integration')
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
