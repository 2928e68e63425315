"""
Instrumentation of network operations for OONI measurements.

This library observes the network operations performed while running
a censorship measurement (DNS lookup, TCP connect, TLS handshake and
HTTP round trips), records each of them as an event inside a trace and
converts the trace into the OONI archival data format.

Submodules:

- `correlation` contains the context used to propagate the dial ID and
the transaction ID across independently instrumented layers;

- `errorx` maps Python exceptions to OONI failure strings (and
`scrubber` removes IP addresses from free-form error messages);

- `netx` contains the measuring wrappers for resolvers, dialers,
TLS dialers and HTTP transports;

- `trace` contains the event trace shared by the wrappers;

- `archival` converts a trace to the archival data format (and parses
the archival data format back using `typecast`);

- `extensions` declares which data format extensions a measurement uses.

The naming follows probe-engine's netx packages, which makes it easier
to figure out the Go type corresponding to a Python type.
"""
