"""Shared fakes: management API (FastAPI), control plane (gRPC) and relay (TCP)."""

import base64
import json
import queue
import socket
import struct
import sys
import threading
import time
import uuid
from concurrent import futures
from pathlib import Path

import grpc
import pytest
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from border0.client import APIClient
from border0.listen import listen
from border0.listen.protocol import CONTROL_METHOD, CONTROL_SERVICE, decode_message

SOCKET_ID = "00000000-0000-0000-0000-000000000001"
TOKEN = "T"


def wait_until(predicate, timeout=5.0, interval=0.01):
    """Poll until predicate() is truthy. Returns its last value."""
    deadline = time.monotonic() + timeout
    while True:
        value = predicate()
        if value or time.monotonic() >= deadline:
            return value
        time.sleep(interval)


def border0_threads():
    return [t for t in threading.enumerate() if t.name.startswith("border0-")]


# ============================================================================
# Fake management API
# ============================================================================


class FakeAPIState:
    """In-memory organization served by the fake management API."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.sockets = {}  # socket_id -> dict
        self.policies = {}  # policy_id -> dict
        self.groups = []
        self.connectors = {}
        self.connector_tokens = {}
        self.users = {}  # user_id -> dict
        self.service_accounts = {}  # name -> dict
        self.service_account_tokens = {}  # name -> list of dicts
        self.requests = []  # (method, path, query, authorization)
        self.injected = []  # queued (status, body, headers) returned before routing
        self.fail_paths = {}  # (method, path) -> list of (status, body)

    def inject(self, status, body=None, headers=None, times=1):
        for _ in range(times):
            self.injected.append((status, body, headers or {}))

    def fail(self, method, path, status, body=None, times=1):
        self.fail_paths.setdefault((method, path), []).extend([(status, body)] * times)

    def add_socket(self, name, socket_type="http", socket_id=None, policies=()):
        socket_id = socket_id or str(uuid.uuid4())
        self.sockets[socket_id] = {
            "socket_id": socket_id,
            "name": name,
            "socket_type": socket_type,
            "policies": [self.policies[p] for p in policies],
        }
        for p in policies:
            self.policies[p]["socket_ids"].append(socket_id)
        return self.sockets[socket_id]

    def add_policy(self, name, policy_id=None):
        policy_id = policy_id or str(uuid.uuid4())
        self.policies[policy_id] = {
            "id": policy_id,
            "name": name,
            "description": "",
            "org_wide": False,
            "policy_data": {"version": "v1"},
            "socket_ids": [],
        }
        return self.policies[policy_id]

    def find_socket(self, key):
        if key in self.sockets:
            return self.sockets[key]
        for s in self.sockets.values():
            if s["name"] == key:
                return s
        return None

    def socket_policy_names(self, key):
        return sorted(p["name"] for p in self.find_socket(key)["policies"])

    def calls(self, method=None, path=None):
        return [
            r for r in self.requests
            if (method is None or r[0] == method) and (path is None or r[1] == path)
        ]


def _not_found(what):
    return JSONResponse(status_code=404, content={"error_message": f"{what} not found"})


def _apply_actions(state, socket_id, policy_ids, actions):
    socket = state.sockets[socket_id]
    for action, policy_id in zip(actions, policy_ids):
        policy = state.policies[policy_id]
        attached = [p["id"] for p in socket["policies"]]
        if action == "add" and policy_id not in attached:
            socket["policies"].append(policy)
            policy["socket_ids"].append(socket_id)
        elif action == "remove" and policy_id in attached:
            socket["policies"] = [p for p in socket["policies"] if p["id"] != policy_id]
            policy["socket_ids"].remove(socket_id)


def create_fake_api(state: FakeAPIState) -> FastAPI:
    app = FastAPI()

    @app.middleware("http")
    async def record_and_inject(request: Request, call_next):
        state.requests.append((
            request.method,
            request.url.path,
            dict(request.query_params),
            request.headers.get("authorization"),
        ))
        if state.injected:
            status, body, headers = state.injected.pop(0)
            return JSONResponse(status_code=status, content=body, headers=headers)
        planned = state.fail_paths.get((request.method, request.url.path))
        if planned:
            status, body = planned.pop(0)
            return JSONResponse(status_code=status, content=body)
        return await call_next(request)

    # -- Sockets -------------------------------------------------------------

    @app.get("/socket")
    async def list_sockets():
        return list(state.sockets.values())

    @app.post("/socket")
    async def create_socket(request: Request):
        body = await request.json()
        if state.find_socket(body["name"]) is not None:
            return JSONResponse(status_code=409, content={"error_message": "socket already exists"})
        return state.add_socket(body["name"], body.get("socket_type", "http"))

    @app.get("/socket/{key}")
    async def get_socket(key: str):
        socket = state.find_socket(key)
        if socket is None:
            return _not_found("socket")
        return socket

    @app.put("/socket/{key}")
    async def update_socket(key: str, request: Request):
        socket = state.find_socket(key)
        if socket is None:
            return _not_found("socket")
        body = await request.json()
        socket.update({k: v for k, v in body.items() if k in ("name", "description")})
        return socket

    @app.delete("/socket/{key}")
    async def delete_socket(key: str):
        socket = state.find_socket(key)
        if socket is None:
            return _not_found("socket")
        del state.sockets[socket["socket_id"]]
        return Response(status_code=204)

    @app.get("/socket/{key}/connectors")
    async def socket_connectors(key: str):
        socket = state.find_socket(key)
        if socket is None:
            return _not_found("socket")
        return {"list": [{"id": 1, "connector_id": "c-1", "connector_name": "edge", "socket_id": socket["socket_id"]}]}

    @app.put("/socket/{socket_id}/policy")
    async def socket_policies(socket_id: str, request: Request):
        if socket_id not in state.sockets:
            return _not_found("socket")
        body = await request.json()
        actions = body["actions"]
        _apply_actions(state, socket_id, [a["id"] for a in actions], [a["action"] for a in actions])
        return {}

    # -- Policies ------------------------------------------------------------

    @app.get("/policies")
    async def list_policies():
        return list(state.policies.values())

    @app.post("/policies")
    async def create_policy(request: Request):
        body = await request.json()
        return state.add_policy(body["name"])

    @app.get("/policies/find")
    async def find_policy(name: str):
        for p in state.policies.values():
            if p["name"] == name:
                return p
        return _not_found("policy")

    @app.get("/policy/{policy_id}")
    async def get_policy(policy_id: str):
        if policy_id not in state.policies:
            return _not_found("policy")
        return state.policies[policy_id]

    @app.delete("/policy/{policy_id}")
    async def delete_policy(policy_id: str):
        if state.policies.pop(policy_id, None) is None:
            return _not_found("policy")
        return {}

    @app.put("/policy/{policy_id}/socket")
    async def policy_sockets(policy_id: str, request: Request):
        if policy_id not in state.policies:
            return _not_found("policy")
        body = await request.json()
        for a in body["actions"]:
            _apply_actions(state, a["id"], [policy_id], [a["action"]])
        return {}

    # -- Connectors ----------------------------------------------------------

    @app.get("/connectors")
    async def list_connectors():
        return list(state.connectors.values())

    @app.post("/connector")
    async def create_connector(request: Request):
        body = await request.json()
        connector_id = str(uuid.uuid4())
        state.connectors[connector_id] = {"connector_id": connector_id, **body}
        return state.connectors[connector_id]

    @app.get("/connector/{connector_id}")
    async def get_connector(connector_id: str):
        if connector_id not in state.connectors:
            return _not_found("connector")
        return state.connectors[connector_id]

    @app.delete("/connector/{connector_id}")
    async def delete_connector(connector_id: str):
        if state.connectors.pop(connector_id, None) is None:
            return _not_found("connector")
        return {}

    @app.post("/connector/token")
    async def create_connector_token(request: Request):
        body = await request.json()
        token = {"id": str(uuid.uuid4()), "token": "secret-token", **body}
        state.connector_tokens.setdefault(body["connector_id"], []).append(token)
        return token

    @app.get("/connector/{connector_id}/tokens")
    async def connector_tokens(connector_id: str):
        return {"list": state.connector_tokens.get(connector_id, [])}

    # -- Groups --------------------------------------------------------------

    @app.get("/organizations/iam/groups")
    async def list_groups(page: int = 1, page_size: int = 100):
        start = (page - 1) * page_size
        items = state.groups[start:start + page_size]
        next_page = page + 1 if start + page_size < len(state.groups) else 0
        return {
            "list": items,
            "pagination": {"current_page": page, "page_size": page_size, "next_page": next_page},
        }

    # -- Users ---------------------------------------------------------------

    @app.get("/organizations/iam/users")
    async def list_users():
        return {"list": list(state.users.values())}

    @app.post("/organizations/iam/users")
    async def create_user(request: Request):
        body = await request.json()
        if any(u["email"] == body["email"] for u in state.users.values()):
            return JSONResponse(status_code=409, content={"error_message": "email already in use"})
        user_id = str(uuid.uuid4())
        state.users[user_id] = {**body, "id": user_id, "user_type": "member"}
        return state.users[user_id]

    @app.put("/organizations/iam/users")
    async def update_user(request: Request):
        body = await request.json()
        user = state.users.get(body.get("id", ""))
        if user is None:
            return _not_found("user")
        user.update({k: v for k, v in body.items() if k in ("display_name", "role")})
        return user

    @app.get("/organizations/iam/users/{user_id}")
    async def get_user(user_id: str):
        if user_id not in state.users:
            return _not_found("user")
        return state.users[user_id]

    @app.delete("/organizations/iam/users/{user_id}")
    async def delete_user(user_id: str):
        if state.users.pop(user_id, None) is None:
            return _not_found("user")
        return Response(status_code=204)

    # -- Service accounts ----------------------------------------------------

    @app.post("/organizations/iam/service_accounts")
    async def create_service_account(request: Request):
        body = await request.json()
        if body["name"] in state.service_accounts:
            return JSONResponse(status_code=409, content={"error_message": "service account exists"})
        state.service_accounts[body["name"]] = {
            **body,
            "service_account_id": str(uuid.uuid4()),
            "created_at": "2024-01-01T00:00:00Z",
        }
        return state.service_accounts[body["name"]]

    @app.get("/organizations/iam/service_accounts/{name}")
    async def get_service_account(name: str):
        if name not in state.service_accounts:
            return _not_found("service account")
        return state.service_accounts[name]

    @app.put("/organizations/iam/service_accounts/{name}")
    async def update_service_account(name: str, request: Request):
        account = state.service_accounts.get(name)
        if account is None:
            return _not_found("service account")
        body = await request.json()
        account.update({k: v for k, v in body.items() if k in ("description", "role", "active")})
        return account

    @app.delete("/organizations/iam/service_accounts/{name}")
    async def delete_service_account(name: str):
        if state.service_accounts.pop(name, None) is None:
            return _not_found("service account")
        return Response(status_code=204)

    @app.post("/organizations/iam/service_accounts/{name}/tokens")
    async def create_service_account_token(name: str, request: Request):
        if name not in state.service_accounts:
            return _not_found("service account")
        body = await request.json()
        token = {**body, "id": str(uuid.uuid4()), "token": "sa-secret"}
        state.service_account_tokens.setdefault(name, []).append(token)
        return token

    @app.delete("/organizations/iam/service_accounts/{name}/tokens/{token_id}")
    async def delete_service_account_token(name: str, token_id: str):
        tokens = state.service_account_tokens.get(name, [])
        remaining = [t for t in tokens if t["id"] != token_id]
        if len(remaining) == len(tokens):
            return _not_found("token")
        state.service_account_tokens[name] = remaining
        return Response(status_code=204)

    # -- Server info ---------------------------------------------------------

    @app.get("/serverinfo")
    async def server_info():
        return {"data_consistency": {"rx_after_tx_delay_ms": 250}}

    return app


class FakeAPIServer:
    """Runs the fake API with uvicorn on a background thread."""

    def __init__(self):
        self.state = FakeAPIState()
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind(("127.0.0.1", 0))
        self.port = self._sock.getsockname()[1]
        self.url = f"http://127.0.0.1:{self.port}"
        config = uvicorn.Config(
            create_fake_api(self.state), log_level="warning", lifespan="off"
        )
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(
            target=self._server.run, kwargs={"sockets": [self._sock]}, daemon=True
        )

    def start(self):
        self._thread.start()
        if not wait_until(lambda: self._server.started, timeout=10):
            raise RuntimeError("fake API server did not start")

    def stop(self):
        self._server.should_exit = True
        self._thread.join(5)
        self._sock.close()

    def client(self, **kwargs) -> APIClient:
        kwargs.setdefault("auth_token", TOKEN)
        kwargs.setdefault("retry_wait_min", 0.01)
        kwargs.setdefault("retry_wait_max", 0.02)
        client = APIClient(base_url=self.url, **kwargs)
        client._sleep = lambda seconds: None
        return client


@pytest.fixture(scope="session")
def api_server():
    server = FakeAPIServer()
    server.start()
    yield server
    server.stop()


@pytest.fixture
def api(api_server):
    """Fake management API with a clean organization."""
    api_server.state.reset()
    yield api_server
    api_server.state.reset()


# ============================================================================
# Fake control plane
# ============================================================================


def _encode(msg: dict) -> bytes:
    return json.dumps(msg).encode("utf-8")


class FakeSession:
    """One Control stream as seen by the server."""

    def __init__(self, metadata):
        self.metadata = metadata
        self.received = []
        self.socket_id = None
        self.registered = threading.Event()
        self.finished = threading.Event()
        self._cond = threading.Condition()
        self._outbox = queue.Queue()

    def _record(self, msg):
        with self._cond:
            self.received.append(msg)
            self._cond.notify_all()

    def send(self, msg: dict):
        self._outbox.put(("send", msg))

    def dial(self, request_id, relay_address, relay_token=b"\xaa", peer_hint=None):
        msg = {
            "type": "dial_request",
            "request_id": request_id,
            "relay_address": relay_address,
            "relay_token": base64.b64encode(relay_token).decode("ascii"),
        }
        if peer_hint:
            msg["peer_hint"] = peer_hint
        self.send(msg)

    def heartbeat(self, seq):
        self.send({"type": "heartbeat", "seq": seq})

    def end(self):
        """Finish the stream with status OK."""
        self._outbox.put(("end", None))

    def abort(self, code, details=""):
        self._outbox.put(("abort", (code, details)))

    def messages(self, msg_type):
        with self._cond:
            return [m for m in self.received if m.get("type") == msg_type]

    def wait_for(self, msg_type, count=1, timeout=5.0):
        """Wait until ``count`` messages of ``msg_type`` arrived, return them."""
        deadline = time.monotonic() + timeout
        with self._cond:
            while True:
                found = [m for m in self.received if m.get("type") == msg_type]
                if len(found) >= count:
                    return found
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise AssertionError(
                        f"expected {count} {msg_type} message(s), got {len(found)}: {self.received}"
                    )
                self._cond.wait(remaining)


class FakeControlServer:
    """gRPC server implementing the listener Control stream.

    Attributes:
        register_error: (StatusCode, details) to fail Register with.
        drop_after_register: Number of upcoming sessions to end right after
            Registered.
        silent: Never answer Register.
    """

    def __init__(self, register_service=True):
        self.sessions = []
        self.register_error = None
        self.drop_after_register = 0
        self.silent = False
        self.connector_ids = []
        self._lock = threading.Lock()
        self._server = grpc.server(futures.ThreadPoolExecutor(max_workers=16))
        if register_service:
            handler = grpc.stream_stream_rpc_method_handler(
                self._control,
                request_deserializer=decode_message,
                response_serializer=_encode,
            )
            self._server.add_generic_rpc_handlers(
                (grpc.method_handlers_generic_handler(CONTROL_SERVICE, {CONTROL_METHOD: handler}),)
            )
        self.port = self._server.add_insecure_port("127.0.0.1:0")
        self.endpoint = f"127.0.0.1:{self.port}"

    def start(self):
        self._server.start()

    def stop(self):
        self._server.stop(0)

    def session(self, index=0, timeout=5.0) -> FakeSession:
        """Wait for the index-th registered session."""
        def registered():
            with self._lock:
                if len(self.sessions) > index and self.sessions[index].registered.is_set():
                    return self.sessions[index]
            return None

        session = wait_until(registered, timeout=timeout)
        if session is None:
            raise AssertionError(f"session {index} was never registered")
        return session

    def _control(self, request_iterator, context):
        session = FakeSession(dict(context.invocation_metadata()))
        with self._lock:
            self.sessions.append(session)
            index = len(self.sessions)

        def read():
            try:
                for msg in request_iterator:
                    session._record(msg)
            except Exception:
                # stream torn down by the client
                pass

        threading.Thread(target=read, daemon=True).start()

        try:
            register = session.wait_for("register", timeout=5)[0]
            session.socket_id = register["socket_id"]
            if self.register_error is not None:
                code, details = self.register_error
                context.abort(code, details)
            if self.silent:
                while context.is_active():
                    time.sleep(0.05)
                return

            connector_id = f"connector-{index}"
            self.connector_ids.append(connector_id)
            yield {"type": "registered", "connector_id": connector_id}
            session.registered.set()

            with self._lock:
                drop = self.drop_after_register > 0
                if drop:
                    self.drop_after_register -= 1
            if drop:
                return

            while context.is_active():
                try:
                    kind, payload = session._outbox.get(timeout=0.05)
                except queue.Empty:
                    continue
                if kind == "end":
                    return
                if kind == "abort":
                    context.abort(*payload)
                yield payload
        finally:
            session.finished.set()


@pytest.fixture
def control():
    server = FakeControlServer()
    server.start()
    yield server
    server.stop()


# ============================================================================
# Fake relay
# ============================================================================


class FakeRelay:
    """TCP relay: reads the framed token, answers a status byte, then echoes.

    Attributes:
        status: Status byte sent after the token (0 = OK).
        hold: Read the token but never answer.
        deliver: After OK, hand the connection to the test (as the end
            user's side) through ``user_conns`` instead of echoing.
    """

    def __init__(self):
        self.status = 0
        self.hold = False
        self.deliver = False
        self.user_conns = queue.Queue()
        self.tokens = []
        self.connections = 0
        self.closed_connections = 0
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind(("127.0.0.1", 0))
        self._sock.listen(32)
        self._sock.settimeout(0.1)
        self.port = self._sock.getsockname()[1]
        self.address = f"127.0.0.1:{self.port}"
        self._conns = []
        self._thread = threading.Thread(target=self._serve, daemon=True)

    def start(self):
        self._thread.start()

    def stop(self):
        self._stop.set()
        self._thread.join(2)
        self._sock.close()
        with self._lock:
            conns = list(self._conns)
        for conn in conns:
            conn.close()

    def _serve(self):
        while not self._stop.is_set():
            try:
                conn, _ = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            with self._lock:
                self.connections += 1
                self._conns.append(conn)
            threading.Thread(target=self._handle, args=(conn,), daemon=True).start()

    def _read_exact(self, conn, n):
        data = b""
        while len(data) < n:
            chunk = conn.recv(n - len(data))
            if not chunk:
                return None
            data += chunk
        return data

    def _handle(self, conn):
        handed_off = False
        try:
            header = self._read_exact(conn, 4)
            if header is None:
                return
            (length,) = struct.unpack("!I", header)
            token = self._read_exact(conn, length)
            with self._lock:
                self.tokens.append(token)
            if not self.hold:
                conn.sendall(bytes([self.status]))
            if self.deliver and not self.hold:
                handed_off = True
                self.user_conns.put(conn)
                return
            while True:
                data = conn.recv(4096)
                if not data:
                    break
                if not self.hold:
                    conn.sendall(data)
        except OSError:
            pass
        finally:
            if not handed_off:
                with self._lock:
                    self.closed_connections += 1
                conn.close()


@pytest.fixture
def relay():
    server = FakeRelay()
    server.start()
    yield server
    server.stop()


# ============================================================================
# Listener
# ============================================================================


@pytest.fixture
def start_listener(api, control):
    """Factory starting listeners against the fakes; closes them afterwards."""
    listeners = []

    def start(**options):
        api_client = options.pop("api_client", None) or api.client()
        options.setdefault("socket_name", "s1")
        options.setdefault("socket_type", "http")
        options.setdefault("auth_token", TOKEN)
        options.setdefault("control_endpoint", control.endpoint)
        options.setdefault("insecure_transport", True)
        options.setdefault("backoff", {"base": 0.05, "cap": 0.2})
        options.setdefault("startup_timeout", 10.0)
        lst = listen(api_client=api_client, **options)
        listeners.append(lst)
        return lst

    yield start
    for lst in listeners:
        lst.close()
