"""TFTP client, server and error simulator.

The client and server speak stop-and-wait TFTP over UDP. The error
simulator sits between them and injects one-shot faults (lost, delayed,
duplicated and corrupted packets) so that the retransmission and
error-reporting paths can be watched at work.
"""

__all__ = []
