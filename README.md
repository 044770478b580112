# multiverso

A parameter server framework for distributed machine learning. Worker
processes keep local cache tables, push parameter updates through a
background aggregator, and exchange them with one or more servers over
ZeroMQ sockets. Servers hold the global model, answer parameter requests,
and hold back workers that run too many clocks ahead of the slowest one.

## Installation

```
pip install .
```

For the test suite:

```
pip install .[test]
pytest
```

## Running a server

```
multiverso-server -serverid 0 -workers 1 -endpoint 127.0.0.1:5555
```

The same entry point is `multiverso.server_main.main`, and
`python -m multiverso.server_main` runs it too.

Options:

- `-serverid <id>` – the server id (0 if missing)
- `-workers <num_of_workers>` – number of worker processes the server waits for
- `-config <filename>` – an endpoint list file; the server binds to the
  entry at position `<id>`
- `-endpoint <ip:port>` – the endpoint of this server, used when `-config`
  is not given
- `-logfile <filename>` – write the log to this file as well as stdout
- `-loglevel <level>` – one of `debug`, `info`, `error`, `fatal`, in any
  case; anything else means `info`
- `-help` – print the option list and exit

`tcp://` is put in front of the endpoint. The server runs until every
worker has sent its close message (or Ctrl-C), then writes each table to
`server_<server_id>_table_<table_id>.model` in the working directory: one
line per created row, `row_id key:value key:value ...`, and an empty line
for a row with no non-zero values.

### Endpoint list files

Workers find the servers through the same kind of file: one
`<id> <ip:port>` pair per line. Servers are numbered by their position in
the file; the id column is read but not used for ordering.

```
0 127.0.0.1:5555
1 127.0.0.1:5556
```

## Writing a worker

A worker subclasses `TrainerBase` (implementing `train_iteration`) and
`ParameterLoaderBase` (implementing `parse_and_request`) and drives them
through a `Multiverso` object:

```python
from multiverso.data_block import DataBlockBase, DataBlockType
from multiverso.multiverso import Config, LockOption, Multiverso
from multiverso.parameter_loader import ParameterLoaderBase
from multiverso.row import ElementType, Format
from multiverso.trainer import TrainerBase


class Loader(ParameterLoaderBase):
    def parse_and_request(self, data_block):
        self.request_table(0)


class Trainer(TrainerBase):
    def train_iteration(self, data_block):
        row = self.get_row(0, 0)        # local cache of row 0 of table 0
        self.add_element(0, 0, 0, 1)    # send +1 for column 0


mv = Multiverso()
trainers = [Trainer(mv)]
config = Config(server_endpoint_file="servers.txt", lock_option=LockOption.LOCKED)
mv.init(config, trainers, Loader(mv))

mv.begin_config()
mv.add_table(0, 10, 10, ElementType.INT, Format.DENSE)
mv.end_config()

mv.begin_train()
mv.begin_clock()
mv.push_data_block(DataBlockBase(DataBlockType.TRAIN))
mv.end_clock()
mv.wait()
mv.end_train()
mv.close()
```

`Config` fields: `num_trainers` (used when `init` gets no trainer list),
`num_aggregator`, `max_delay` (a negative value lets clocks pass at once),
`is_pipeline`, `lock_option` (`IMMUTABLE` leaves the local cache untouched
by `add_element`/`add_row`, `LOCK_FREE` and `LOCKED` update it),
`num_lock`, `server_endpoint_file` and `comm_endpoint`.

Tables must be added in order of their ids starting from 0;
`Multiverso.set_row` changes a row's format and capacity on the servers,
in the cache and in the aggregator. `add_to_server` queues an update on
behalf of trainer 0, and `flush` asks the aggregator to send what has been
added so far.

## Building blocks

- `multiverso.row`: `Row` with `Format.DENSE` / `Format.SPARSE` storage
  and `ElementType` (`INT`, `LONG_LONG`, `FLOAT`, `DOUBLE`); `serialize`
  and `batch_add` use the binary form count, keys, values.
- `multiverso.table`: `Table` of lazily created rows, and `RowInfo`.
- `multiverso.msg_pack`: `MsgPack`, `MsgType`, `MsgArrow` – multi-frame
  messages with `serialize`/`deserialize` and `create_reply`.
- `multiverso.delta_pool`: `DeltaPool`, batching deltas from several
  producers to one consumer; `DeltaType.FLUSH` / `DeltaType.CLOCK`.
- `multiverso.aggregator`: `Aggregator`, the background threads that merge
  deltas and send them to the servers.
- `multiverso.server`: `Server`, usable in-process as well as from the
  command.
- `multiverso.communicator`: `Communicator` and `RegisterInfo`.
- `multiverso.zmq_util`: `get_context`, `create_socket`, `poll`.
- `multiverso.barrier.Barrier`, `multiverso.vector_clock.VectorClock`,
  `multiverso.lock.LockManager`, `multiverso.stop_watch.StopWatch`,
  `multiverso.endpoint_list.EndpointList`,
  `multiverso.cl_parser.CommandLineParser`.
- `multiverso.log`: `Logger`, `LogLevel` and module-level `debug`, `info`,
  `error`, `fatal`. A fatal message raises `FatalError` unless
  `reset_kill_fatal(False)` has been called.

## What it does not do

- Servers do not start themselves: run one `multiverso-server` (or a
  `Server` object) per entry of the endpoint list before starting workers.
  There is no launcher and no MPI transport; all traffic goes over
  ZeroMQ.
- The parameter loader always connects to the default communicator
  endpoint (`zmq_util.COMM_ENDPOINT`), so a worker that uses a loader must
  keep `Config.comm_endpoint` at its default.
- The model files written by a server are the only persistence; there is
  no reader for them and no way to restore a server from them.