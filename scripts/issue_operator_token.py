"""
Mint a bearer token for the monitoring / reconciliation APIs.

Usage:
    python -m scripts.issue_operator_token ops@school.example
    python -m scripts.issue_operator_token reconciler-svc --role reconciler --hours 720
"""
import argparse

from ipngate.api.auth import ROLES, issue_token


def main() -> None:
    parser = argparse.ArgumentParser(description="Issue an IPN gateway bearer token")
    parser.add_argument("subject", help="operator email or service name")
    parser.add_argument("--role", choices=ROLES, default="operator")
    parser.add_argument("--hours", type=int, default=None, help="expiry (default DASHBOARD_JWT_EXPIRY_HOURS)")
    args = parser.parse_args()
    print(issue_token(args.subject, role=args.role, expires_hours=args.hours))


if __name__ == "__main__":
    main()
