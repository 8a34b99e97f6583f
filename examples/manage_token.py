"""Create, show or revoke the shared auth token.

    python examples/manage_token.py [generate|show|revoke]
"""

import sys

from gpurelay.auth import generate_token, get_auth_path, get_current_token, revoke_token

action = sys.argv[1] if len(sys.argv) > 1 else "show"

if action == "generate":
    token = generate_token()
    print(f"New token written to {get_auth_path()}")
    print(f"On the client: export GPURELAY_AUTH_TOKEN={token}")
elif action == "revoke":
    print("Revoked." if revoke_token() else "No stored token.")
else:
    token = get_current_token()
    print(token if token else "No token configured; the server will run without auth.")
