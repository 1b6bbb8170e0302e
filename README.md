# headwind

Building blocks for a mesh VPN control server:

- **ACL policies** (`headwind.policy`, `headwind.acls`): read HuJSON or YAML
  policy files and turn them into packet-filter rules and SSH rules. Users,
  groups, tags, hosts, IP addresses and CIDR prefixes can all be used in
  `src` and `dst`.
- **Records** (`headwind.models`): `User`, `HostInfo` and `Machine`
  dataclasses that the rule generation works on.
- **API keys** (`headwind.apikeys`): create, list, expire, destroy and
  validate bcrypt-hashed API keys. Keys are stored in SQLite.
- **Authentication** (`headwind.auth`): check `Authorization: Bearer ...`
  header values against the API key store.
- **Server state** (`headwind.app`): build database connection strings,
  remove a leftover unix socket file, and track when each user's state last
  changed (`StateTracker`).
- **CLI output** (`headwind.output`, `headwind.tables`): render results as
  JSON, JSON lines or YAML, and build table rows for routes, users and
  pre-auth keys.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Evaluating a policy

```python
from headwind.acls import load_policy_file, generate_acl_rules
from headwind.models import Machine, User

policy = load_policy_file("policy.hujson")
machines = [Machine(user=User(name="alice"), ip_addresses=["100.64.0.1"])]
for rule in generate_acl_rules(machines, policy, strip_email_domain=False):
    print(rule.src_ips, rule.dst_ports, rule.ip_proto)
```

Files ending in `.yml` or `.yaml` are read as YAML; anything else is read
as HuJSON (JSON with comments and trailing commas).

Destinations take the form `alias:ports`, for example `tag:web:80,443`,
`192.168.1.0/24:22` or `*:*`. Any protocol other than TCP, UDP and SCTP
needs `*` as its port.

An empty policy (no groups, hosts or ACLs) is rejected with
`EmptyPolicyError`, a subclass of `PolicyError`.

`ACLManager` keeps the active policy and the rules generated from it. It
starts with an allow-all rule. SSH rules are only generated when
`enable_ssh=True` is passed, or, when it is left as `None`, when the
environment variable `HEADWIND_EXPERIMENTAL_FEATURE_SSH` is set to a true
value.

## API keys

```python
from datetime import datetime, timedelta, timezone
from headwind.apikeys import APIKeyStore

with APIKeyStore("keys.db") as store:
    key_str, key = store.create(datetime.now(timezone.utc) + timedelta(hours=2))
    assert store.validate(key_str)
    store.expire(key)
    assert not store.validate(key_str)
```

The full key string (`prefix.secret`) is only returned once. Only a bcrypt
hash of the secret part is stored. `validate` returns `False` for an expired
key and raises `APIKeyError` when the key cannot be parsed, is unknown
(`APIKeyNotFound`) or does not match its hash.

## Authenticating a request

```python
from headwind.auth import AuthenticationError, check_authorization

try:
    check_authorization(store, "Bearer token")
except AuthenticationError as err:
    print(err.status, err)
```

`err.status` is `401` for a missing prefix or an invalid key and `500` when
the key could not be validated at all.

## Output helpers

`format_output(result, override, output_format)` returns `result` as
indented JSON (`"json"`), compact JSON (`"json-line"`) or YAML (`"yaml"`),
and the `override` text for any other format. `success_output`,
`error_output` and `version_output` print the same. `routes_table`,
`users_table` and `preauthkeys_table` return lists of rows headed by the
column names; `parse_expiration` reads periods such as `30m`, `24h` or
`1w2d`.

## What this package does not do

It has no network server: it does not listen for HTTP or gRPC, serve
clients, or run the periodic expiry and failover jobs. It installs no
command-line program; the output and table helpers only produce text for a
caller to print. It does not generate CI workflow files.