"""In-memory stand-in for a psycopg2 connection to a Citus coordinator."""


class FakeCursor:
    def __init__(self, coordinator):
        self.coordinator = coordinator
        self.rows = []

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def execute(self, sql, params=None):
        self.rows = self.coordinator.run(sql, params)

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, coordinator, params):
        self.coordinator = coordinator
        self.params = params
        self.autocommit = False
        self.closed = False

    def cursor(self):
        assert not self.closed, "cursor() on a closed connection"
        return FakeCursor(self.coordinator)

    def close(self):
        self.closed = True


class FakeCoordinator:
    """
    Models pg_dist_node and the Citus functions the registrar calls.

    ``fail(function, exc)`` makes any statement mentioning ``function``
    raise ``exc``; ``hidden`` holds addresses left out of the active
    worker list.
    """

    def __init__(self, nodes=()):
        self.nodes = {}
        self.next_node_id = 1
        self.rebalance_job_id = 42
        self.executed = []
        self.failures = {}
        self.hidden = set()
        self.connect_error = None
        self.connections = []
        for address, port in nodes:
            self._insert(address, port)

    def _insert(self, address, port, active=True):
        self.nodes[(address, port)] = {'nodeid': self.next_node_id, 'isactive': active}
        self.next_node_id += 1
        return self.nodes[(address, port)]['nodeid']

    def connect(self, **params):
        if self.connect_error is not None:
            raise self.connect_error
        conn = FakeConnection(self, params)
        self.connections.append(conn)
        return conn

    def fail(self, function, exc):
        self.failures[function] = exc

    def calls(self, function):
        return [sql for sql, _ in self.executed if function in sql]

    def active_addresses(self):
        return [address for (address, _), node in self.nodes.items() if node['isactive']]

    def run(self, sql, params):
        self.executed.append((sql, params))
        for function, exc in self.failures.items():
            if function in sql:
                raise exc

        if 'FROM pg_dist_node' in sql:
            node = self.nodes.get(tuple(params))
            return [(node['nodeid'], node['isactive'])] if node else []
        if 'citus_activate_node' in sql:
            node = self.nodes[tuple(params)]
            node['isactive'] = True
            return [(node['nodeid'],)]
        if 'citus_add_node' in sql:
            key = tuple(params)
            if key in self.nodes:
                return [(self.nodes[key]['nodeid'],)]
            return [(self._insert(*key),)]
        if 'citus_get_active_worker_nodes' in sql:
            return [
                (address, port)
                for (address, port), node in sorted(self.nodes.items())
                if node['isactive'] and address not in self.hidden
            ]
        if 'citus_rebalance_start' in sql:
            return [(self.rebalance_job_id,)]
        if 'citus_rebalance_wait' in sql:
            return [(None,)]
        raise AssertionError(f"Unexpected SQL: {sql}")
