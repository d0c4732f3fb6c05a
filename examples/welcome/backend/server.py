import json
import os
from http.server import BaseHTTPRequestHandler, HTTPServer

MESSAGE = os.environ.get("MESSAGE", "welcome")


class Handler(BaseHTTPRequestHandler):
    def do_GET(self):
        if self.path == "/health":
            body = b"ok"
        elif self.path == "/message":
            body = json.dumps({"message": MESSAGE}).encode()
        else:
            self.send_error(404)
            return
        self.send_response(200)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


if __name__ == "__main__":
    address = (os.environ.get("CONVOY_ADDRESS", "127.0.0.1"), int(os.environ.get("PORT", "8000")))
    print(f"backend listening on {address[0]}:{address[1]}", flush=True)
    HTTPServer(address, Handler).serve_forever()
