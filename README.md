# meshsidecar

Building blocks for a sidecar runtime that sits next to an application and
gives it state, pub/sub, output bindings, service-to-service invocation and
virtual actors over a small HTTP API. It also has the cluster-side pieces:
an actor placement service, a pod admission webhook that adds the sidecar
container, and operator handlers and an operator HTTP API.

Its only runtime dependency is `werkzeug`. Install it with `pip install .`
and the test extra with `pip install .[test]`.

## Modules

- **`meshsidecar.hashring`**: consistent hashing with bounded loads.
  `ConsistentHash` maps keys to hosts. Each host gets 10 points on the ring,
  hashed with BLAKE2b. `get` returns the owner of a key, and `get_host`
  returns its `Host` record (name, port, load). `get_least` walks the ring
  clockwise from the key to the first host whose load is within 1.25 times
  the average. `inc`, `done` and `update_load` change loads. `max_load`,
  `get_loads`, `host_names`, `remove` and `internals` round it off.
  `new_from_existing` rebuilds a ring from exported internals. A lookup on an
  empty ring raises `NoHostsError`.
- **`meshsidecar.placement_service`**: `PlacementService` keeps one hash ring
  per actor type. `report_status(stream, host_id, stop_event)` serves one
  runtime connection. It registers the stream, sends it the current tables,
  then reads `HostReport`s from `stream.recv()` until that returns `None` or
  raises. At that point the host is removed from its rings. Whenever a ring
  changes, every connected stream receives three `PlacementOrder`s through
  `stream.send()`: `"lock"`, `"update"` (carrying `PlacementTables` with the
  generation as version) and `"unlock"`.
- **`meshsidecar.messaging`**: `DirectMessaging.invoke` sends a
  `DirectMessageRequest` either to the local app channel (when the target is
  this sidecar's id) or through a connection made by the supplied connection
  factory. `get_address` gives `<target>-dapr.<namespace>.svc.cluster.local:<port>`
  in Kubernetes mode, and `localhost:<port>` in standalone mode through the
  supplied port lookup.
- **`meshsidecar.http_types`**: `RequestContext`, `HttpResponse`, `Endpoint`,
  `ErrorResponse`, `OutputBindingRequest`, `ServerConfig`, and the
  `respond_*` helpers.
- **`meshsidecar.http_api`**: `Api` holds the state (`/v1.0/state`),
  publish (`/v1.0/publish/<topic>`), bindings (`/v1.0/bindings/<name>`),
  invocation (`/v1.0/invoke/<id>/method/...`) and metadata (`/v1.0/metadata`)
  handlers, plus the actor handlers. State keys are prefixed with
  `<dapr_id>-` when an id is set. Published bodies are wrapped by
  `new_cloud_events_envelope`.
- **`meshsidecar.actor_handlers`**: `ActorHandlers` holds the
  `/v1.0/actors/<actorType>/<actorId>/...` handlers for state, transactions,
  methods, reminders and timers.
- **`meshsidecar.http_server`**: `build_router` makes a WSGI `Router` with
  CORS handling from a list of endpoints. `HttpServer` serves the API on a
  background thread with `start_non_blocking()` and stops with `shutdown()`.
  With profiling enabled it also serves a plain-text dump of all thread
  stacks on the profile port.
- **`meshsidecar.injector_config`**: `config_from_environment` reads
  `TLS_CERT_FILE`, `TLS_KEY_FILE`, `SIDECAR_IMAGE`, `NAMESPACE` (all
  required; a missing one raises `ConfigError`) and
  `SIDECAR_IMAGE_PULL_POLICY` (default `"Always"`) into an `InjectorConfig`.
- **`meshsidecar.pod_patch`**: reads the `dapr.io/*` pod annotations and
  builds the `PatchOperation` that adds the `daprd` container
  (`get_pod_patch_operations`, `get_sidecar_container` and the annotation
  helpers).
- **`meshsidecar.webhook`**: `Injector` is a WSGI app answering admission
  reviews on `/mutate`. `handle_admission(body, content_type)` returns the
  status code and body directly. `run(stop_event)` serves it over TLS on
  port 4000.
- **`meshsidecar.operator_handlers`**: `DaprHandler` creates an `<id>-dapr`
  service (HTTP on port 80, gRPC on 50001) for deployments whose pod template
  is annotated with `dapr.io/enabled`. It uses a client you supply with
  `service_exists` and `create_service`.
- **`meshsidecar.operator_api`**: `ApiServer` serves `GET /components` and
  `GET /configurations/<name>` (port 6500) from a client with
  `list_components` and `list_configurations`.
- **`meshsidecar.runtime_config`**: `RuntimeConfig`, `new_runtime_config`,
  `DaprMode`, `Protocol`, the default ports, and build information
  (`version`, `commit`).
- **`meshsidecar.signals`**: `shutdown_event()` returns a `threading.Event`
  that is set on the first SIGINT or SIGTERM. A second signal exits the
  process with code 1.

## Consistent hashing

```python
from meshsidecar.hashring import ConsistentHash, NoHostsError

ring = ConsistentHash()
ring.add("10.0.0.1", 50002)
ring.add("10.0.0.2", 50002)

owner = ring.get("actor-42")          # always the same host for this key
host = ring.get_host("actor-42")      # the Host record, with name, port and load

least = ring.get_least("actor-42")    # bounded-load pick
ring.inc(least)
ring.done(least)

try:
    ConsistentHash().get("anything")
except NoHostsError:
    pass
```

## Serving the HTTP API

The `Api` works with whatever state store, pub/sub, actor runtime and binding
function you give it. A state store needs `get`, `bulk_set` and `delete`:

```python
import json
import urllib.request

from meshsidecar.http_api import Api, GetResponse
from meshsidecar.http_server import HttpServer
from meshsidecar.http_types import ServerConfig


class MemoryStore:
    def __init__(self):
        self.items = {}

    def get(self, req):
        value = self.items.get(req.key)
        return None if value is None else GetResponse(data=value, etag="1")

    def bulk_set(self, reqs):
        for req in reqs:
            self.items[req.key] = json.dumps(req.value).encode()

    def delete(self, req):
        self.items.pop(req.key, None)


api = Api(dapr_id="orders", state_store=MemoryStore())
server = HttpServer(api, ServerConfig("*", "orders", "localhost", 0, 0), host="127.0.0.1")
server.start_non_blocking()

base = f"http://127.0.0.1:{server.port}/v1.0"
body = json.dumps([{"key": "k1", "value": {"n": 1}}]).encode()
urllib.request.urlopen(urllib.request.Request(f"{base}/state", data=body, method="POST"))
print(urllib.request.urlopen(f"{base}/state/k1").read())   # b'{"n": 1}'

server.shutdown()
```

Without a store, `/v1.0/state` answers 400 with `ERR_STATE_STORE_NOT_FOUND`.
The actor routes without an actor runtime answer 400 with
`ERR_ACTOR_RUNTIME_NOT_FOUND`.

## Sidecar injection helpers

```python
from meshsidecar.pod_patch import (
    get_app_port,
    get_kubernetes_dns,
    get_protocol,
    profiling_enabled,
)

annotations = {"dapr.io/port": "3000", "dapr.io/profiling": "yes"}
get_app_port(annotations)             # 3000
get_protocol(annotations)             # "http", the default
profiling_enabled(annotations)        # True
get_kubernetes_dns("dapr-placement", "default")
# "dapr-placement.default.svc.cluster.local"
```

An invalid port or max-concurrency annotation raises `ValueError`.

## Runtime configuration

```python
from meshsidecar.runtime_config import DaprMode, new_runtime_config, version

config = new_runtime_config(
    "orders", "localhost:50005", "", "*", "", "./components",
    "http", "standalone", 3500, 50001, 8080, 7777, False, -1,
)
assert config.mode is DaprMode.STANDALONE
print(version())                      # "edge" for unreleased builds
```

## What the package does not do

- It has no commands and no process that wires the pieces together. You
  build and run the servers from your own code.
- It talks to no Kubernetes API server. The operator handlers and operator
  API take a client object you provide, and nothing here watches
  deployments or components.
- It contains no state store, pub/sub broker, output binding or actor
  runtime. The HTTP API forwards to the objects you pass in.
- The placement service and remote invocation have no network transport of
  their own. Streams, connections and the standalone port lookup are
  supplied by the caller.
- `/v1.0/metadata` answers 200 with an empty body.