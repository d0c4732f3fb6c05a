import json
import os
import urllib.error
import urllib.request
from http.server import BaseHTTPRequestHandler, HTTPServer

BACKEND_URL = os.environ["BACKEND_URL"]


class Handler(BaseHTTPRequestHandler):
    def do_GET(self):
        try:
            with urllib.request.urlopen(BACKEND_URL, timeout=2) as response:
                message = json.load(response)["message"]
            status, body = 200, f"<h1>{message}</h1>"
        except (urllib.error.URLError, OSError, ValueError, KeyError) as e:
            status, body = 502, f"<h1>error</h1><p>backend unavailable: {e}</p>"
        data = body.encode()
        self.send_response(status)
        self.send_header("Content-Type", "text/html")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)


if __name__ == "__main__":
    address = (os.environ.get("CONVOY_ADDRESS", "127.0.0.1"), int(os.environ.get("PORT", "8000")))
    print(f"ui listening on {address[0]}:{address[1]}, backend at {BACKEND_URL}", flush=True)
    HTTPServer(address, Handler).serve_forever()
