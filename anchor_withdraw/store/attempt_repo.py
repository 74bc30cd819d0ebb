import json
import threading
from collections import OrderedDict
from dataclasses import replace
from typing import Optional

from anchor_withdraw.core.state_machine import (
    AfterSuccessfulKYCState,
    AfterWebauthState,
    State,
    initial_state,
    state_from_dict,
    state_to_dict,
)
from anchor_withdraw.observability.logging import log
from anchor_withdraw.settings import settings
from anchor_withdraw.store.redis_conn import get_redis
from anchor_withdraw.transfer.client import TransferServer

PREFIX = "withdrawal:attempt:"

# Pooled clients per transfer server URL; details only hold a reference.
# Bounded LRU: the least recently used client is closed when the cap is hit.
_TRANSFER_SERVERS: "OrderedDict[str, TransferServer]" = OrderedDict()
_TRANSFER_SERVERS_LOCK = threading.Lock()

# States that expose the bearer token to callers
_TOKEN_STATES = (AfterWebauthState, AfterSuccessfulKYCState)


def get_transfer_server(url: str) -> TransferServer:
    evicted = []
    with _TRANSFER_SERVERS_LOCK:
        server = _TRANSFER_SERVERS.get(url)
        if server is not None:
            _TRANSFER_SERVERS.move_to_end(url)
            return server
        server = TransferServer(url)
        _TRANSFER_SERVERS[url] = server
        while len(_TRANSFER_SERVERS) > max(1, int(settings.MAX_TRANSFER_CLIENTS)):
            _, old = _TRANSFER_SERVERS.popitem(last=False)
            evicted.append(old)

    for old in evicted:
        log(event="transfer_client_evicted", transferServer=old.url)
        old.close()
    return server


def _key(attempt_id: str) -> str:
    return f"{PREFIX}{attempt_id}"


def _auth_key(attempt_id: str) -> str:
    return f"{PREFIX}{attempt_id}:auth"


def _gen_key(attempt_id: str) -> str:
    return f"{PREFIX}{attempt_id}:gen"


def load_attempt(attempt_id: str) -> State:
    r = get_redis()
    raw = r.get(_key(attempt_id))
    if not raw:
        return initial_state
    state = state_from_dict(json.loads(raw), get_transfer_server)
    if isinstance(state, _TOKEN_STATES):
        state = replace(state, auth_token=load_auth_token(attempt_id))
    return state


def save_attempt(attempt_id: str, state: State) -> None:
    r = get_redis()
    r.set(_key(attempt_id), json.dumps(state_to_dict(state)), ex=int(settings.ATTEMPT_TTL_SEC))


def delete_attempt(attempt_id: str) -> None:
    r = get_redis()
    r.delete(_key(attempt_id), _auth_key(attempt_id), _gen_key(attempt_id))


def exists(attempt_id: str) -> bool:
    return bool(get_redis().exists(_key(attempt_id)))


# Generation counter: bumped on every persisted transition. An anchor call
# remembers the generation it started from; its result is dropped if the
# counter moved in the meantime.

def load_generation(attempt_id: str) -> int:
    return int(get_redis().get(_gen_key(attempt_id)) or 0)


def bump_generation(attempt_id: str) -> int:
    r = get_redis()
    gen = r.incr(_gen_key(attempt_id))
    r.expire(_gen_key(attempt_id), int(settings.ATTEMPT_TTL_SEC))
    return int(gen)


# Bearer token for the attempt. The only persisted copy: the state JSON never
# holds it, and pending/interactive KYC polls read it from here.

def save_auth_token(attempt_id: str, token: Optional[str]) -> None:
    r = get_redis()
    if token:
        r.set(_auth_key(attempt_id), token, ex=int(settings.ATTEMPT_TTL_SEC))
    else:
        r.delete(_auth_key(attempt_id))


def load_auth_token(attempt_id: str) -> Optional[str]:
    return get_redis().get(_auth_key(attempt_id)) or None


def clear_auth_token(attempt_id: str) -> None:
    try:
        get_redis().delete(_auth_key(attempt_id))
    except Exception as e:
        log(event="attempt_auth_clear_failed", attemptId=attempt_id, error=str(e)[:200])
        raise
