from __future__ import annotations

import argparse
import sys
import urllib.error
import urllib.parse
import urllib.request

from twilio.request_validator import RequestValidator

SCENARIOS = {
    "menu": ("/twilio/voice", {"Digits": ""}),
    "account": ("/twilio/voice", {"Digits": "1"}),
    "connect": ("/twilio/voice", {"Digits": "2"}),
    "trial-accept": ("/twilio/free-trial", {"Digits": "1"}),
    "trial-decline": ("/twilio/free-trial", {"Digits": "2"}),
    "sms": ("/twilio/sms", {"Body": "Hi, my phone will not connect to wifi."}),
    "no-answer": ("/twilio/no-answer", {"DialCallStatus": "no-answer"}),
}


def post_form(url: str, params: dict[str, str], headers: dict[str, str]) -> tuple[int, str]:
    body = urllib.parse.urlencode(params).encode("utf-8")
    request = urllib.request.Request(url, data=body, method="POST")
    request.add_header("Content-Type", "application/x-www-form-urlencoded")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=15) as response:
            return response.status, response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def main() -> int:
    parser = argparse.ArgumentParser(description="Send mock Twilio webhook events to a local API.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--scenario", choices=sorted(SCENARIOS), default="menu")
    parser.add_argument("--from-number", default="+15551234567")
    parser.add_argument("--to-number", default="+15550001234")
    parser.add_argument("--count", type=int, default=1)
    parser.add_argument(
        "--auth-token",
        default="",
        help="Twilio auth token; when set, requests carry a valid X-Twilio-Signature.",
    )
    args = parser.parse_args()

    path, extra = SCENARIOS[args.scenario]
    endpoint = f"{args.base_url.rstrip('/')}{path}"
    for index in range(1, args.count + 1):
        params = {
            "From": args.from_number,
            "To": args.to_number,
            "CallSid": f"CA{index:032d}",
            "MessageSid": f"SM{index:032d}",
            **{key: value for key, value in extra.items() if value},
        }
        headers: dict[str, str] = {}
        if args.auth_token:
            headers["X-Twilio-Signature"] = RequestValidator(args.auth_token).compute_signature(
                endpoint, params
            )
        status_code, response = post_form(endpoint, params, headers)
        print(f"{status_code} {args.scenario} #{index}\n{response}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
