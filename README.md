# falconagent

A host monitoring agent for Linux. It reads system statistics from `/proc`
and a few standard tools (`ss`, `du`, `curl`, `uname`, `git`), turns them into
metric values and pushes them at a fixed interval to one of several transfer
servers over line-delimited JSON-RPC. It also keeps a heartbeat with a
heartbeat server (HBS), from which it learns which ports, processes,
directories and URLs to watch, which plugin scripts to run and which client
addresses to trust.

## Installing

```
pip install .
```

The package has no third-party dependencies. The tests need pytest:

```
pip install ".[test]"
pytest
```

## Running

```
falcon-agent -c cfg.json
```

Options:

- `-c FILE`: the configuration file (default `cfg.json`)
- `-v`: print the version and exit
- `-check` (or `--check`): try every collector once, print `ok` or `fail`
  for each, and exit

If the configuration file is missing or invalid, the message is printed to
standard error and the command exits with status 1. Otherwise the agent runs
until it is interrupted.

## Configuration

The configuration is a JSON document:

```json
{
  "debug": false,
  "hostname": "",
  "ip": "",
  "plugin": {"enabled": false, "dir": "./plugin", "git": "", "logs": "./logs"},
  "heartbeat": {"enabled": true, "addr": "127.0.0.1:6030", "interval": 60, "timeout": 1000},
  "transfer": {"enabled": true, "addrs": ["127.0.0.1:8433"], "interval": 60, "timeout": 1000},
  "http": {"enabled": true, "listen": ":1988", "backdoor": false},
  "collector": {"ifacePrefix": ["eth", "em"], "mountPoint": []},
  "default_tags": {},
  "ignore": {"cpu.busy": true}
}
```

- `hostname`: the endpoint name sent with every metric. If it is empty, the
  `FALCON_ENDPOINT` environment variable is used, and after that the system
  host name.
- `ip`: the address reported to the HBS; if empty, the local address of a
  connection to the HBS is used.
- `heartbeat.interval` and `transfer.interval` are in seconds;
  `heartbeat.timeout` and `transfer.timeout` are connection timeouts in
  milliseconds.
- `transfer.addrs`: tried in random order until one accepts the metrics.
  Nothing is collected for sending unless `transfer.enabled` is set and this
  list is not empty.
- `ignore`: metric names that are collected but never sent.
- `default_tags`: tags added to every metric before it is sent.
- `collector.ifacePrefix`: only interfaces whose names start with one of these
  are reported by the `net.if.*` metrics.
- `collector.mountPoint`: if it is not empty, only these mount points are
  reported by the `df.*` metrics.

## What it collects

- `agent.alive`
- `cpu.*` (idle, busy, user, nice, system, iowait, irq, softirq, steal, guest, switches)
- `mem.*`, `load.*`, `kernel.*`
- `net.if.*` for interfaces that match `ifacePrefix`
- `TcpExt.*`, `snmp.Udp.*` and `ss.*`
- `disk.io.*` for sd, vd, xvd, fio and nvme devices
- `df.bytes.*`, `df.inodes.*` and `df.statistics.*`
- `net.port.listen`, `proc.num`, `du.bs` and `url.check.health` for the
  targets the HBS sends

CPU and disk rates are computed from samples taken every second.

## Plugins

When plugins are enabled, the agent asks the HBS which plugin directories
apply to this host. It runs every file in them that is named
`<cycle>_<name>`, once every `<cycle>` seconds, and kills it if it runs longer
than the cycle less half a second. A plugin prints a JSON list of metric
values on standard output, and these are sent to the transfer. Its standard
error goes to `<logs>/<path>.stderr.log`. A plugin is restarted when its file
changes and stopped when it is no longer listed.

## HTTP interface

When `http.enabled` is set and `http.listen` is given, the agent serves:

- `/health` and `/version`
- `/v1/push`: POST a JSON list of metric values (`endpoint`, `metric`,
  `value`, `step`, `counterType`, `tags`, `timestamp`) to forward them to the
  transfer
- `/proc/...` and `/page/...`: CPU, memory, disk, disk I/O, kernel, uptime and
  load information, wrapped as `{"msg": "success", "data": ...}`
- `/system/date`
- `/plugins`, `/plugin/update` (git pull, or git clone if the plugin
  directory does not exist) and `/plugin/reset` (git reset --hard)
- `/config/reload` and `/exit`: only for trusted addresses
- `/ips` and `/workdir`
- `/run`: runs the request body with `sh -c` for a trusted address, only when
  `http.backdoor` is set
- static files under `public/` in the working directory

A client is trusted if it connects from `127.0.0.1` or from an address in the
list the HBS sends.

## Using it as a library

The collectors are plain functions that return lists of
`falconagent.model.MetricValue`, for example `falconagent.system.mem_metrics`,
`falconagent.network.net_metrics` or `falconagent.dfstat.device_metrics`. The
parsers they use (`parse_meminfo`, `parse_loadavg`, `parse_proc_stat`,
`parse_diskstats`, `parse_net_dev`, `parse_mounts` and others) take the text
of the corresponding `/proc` file and can be used on their own.
`falconagent.collector.check_collector()` returns the same results as
`falcon-agent -check`, as a dictionary.

## What it does not do

- It does not collect GPU metrics.
- It works only on Linux: the collectors read `/proc` and call Linux tools.
- It is not itself a transfer or heartbeat server; it needs both to be running
  elsewhere to send metrics and to learn its watch targets.