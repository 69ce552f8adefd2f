from __future__ import annotations

import cmd
import logging
import socket
from typing import IO, Optional

from .client import TftpClient
from .errors import InvalidCommand
from .fault import FaultSwitch, parse_fault_command
from .relay import ErrorSimulator
from .server import TftpServer


class _Console(cmd.Cmd):
    prompt = "command: "

    def __init__(self, stdin: Optional[IO[str]] = None, stdout: Optional[IO[str]] = None):
        super().__init__(stdin=stdin, stdout=stdout)
        if stdin is not None:
            self.use_rawinput = False

    def say(self, text: str) -> None:
        self.stdout.write(text + "\n")

    def precmd(self, line: str) -> str:
        """Command words are case-insensitive; arguments keep their case."""
        if line == "EOF":
            return line
        word, sep, rest = line.strip().partition(" ")
        return word.lower() + sep + rest

    def emptyline(self) -> bool:
        return False

    def default(self, line: str) -> bool:
        self.say(f"Invalid command {line.split()[0]!r}! Type 'help' to list commands")
        return False


class ClientConsole(_Console):
    intro = "tftpsim client. Type 'help' to list commands."

    def __init__(self, client: TftpClient, stdin: Optional[IO[str]] = None, stdout: Optional[IO[str]] = None):
        super().__init__(stdin, stdout)
        self.client = client

    def _transfer(self, command: str, arg: str) -> None:
        words = arg.split()
        if len(words) != 1:
            self.say(f"usage: {command} <file name>")
            return
        self.client.start(command, words[0])

    def do_read(self, arg: str) -> bool:
        """read <file>: copy <file> from the server into the client directory"""
        self._transfer("read", arg)
        return False

    def do_write(self, arg: str) -> bool:
        """write <file>: copy <file> from the client directory to the server"""
        self._transfer("write", arg)
        return False

    def do_quiet(self, arg: str) -> bool:
        """quiet: only report failures"""
        logging.getLogger().setLevel(logging.WARNING)
        self.say("quiet mode activated")
        return False

    def do_verbose(self, arg: str) -> bool:
        """verbose: log every packet sent and received"""
        logging.getLogger().setLevel(logging.DEBUG)
        self.say("verbose mode activated")
        return False

    def do_connect(self, arg: str) -> bool:
        """connect <address> | connect local host: choose the host requests are sent to"""
        words = arg.split()
        if [w.lower() for w in words] == ["local", "host"]:
            host = "127.0.0.1"
        elif len(words) == 1:
            try:
                host = socket.gethostbyname(words[0])
            except OSError:
                self.say(f"Invalid address given: {words[0]}")
                return False
        else:
            self.say("usage: connect <address> | connect local host")
            return False
        self.client.connect(host)
        self.say(f"sending requests to {host}:{self.client.server_port}")
        return False

    def do_quit(self, arg: str) -> bool:
        """quit: wait for running transfers, then exit"""
        self.client.close()
        self.say("client shut down")
        return True

    do_EOF = do_quit


class ServerConsole(_Console):
    intro = "tftpsim server. Type 'quit' to shut down."

    def __init__(self, server: TftpServer, stdin: Optional[IO[str]] = None, stdout: Optional[IO[str]] = None):
        super().__init__(stdin, stdout)
        self.server = server

    def do_status(self, arg: str) -> bool:
        """status: show how many transfers are running"""
        self.say(f"{self.server.active_sessions} transfer(s) in progress")
        return False

    def do_quit(self, arg: str) -> bool:
        """quit: stop accepting requests and exit once running transfers finish"""
        self.server.shutdown()
        self.say("server shut down")
        return True

    do_EOF = do_quit


class RelayConsole(_Console):
    intro = "tftpsim error simulator. Type 'help' to list commands."

    def __init__(
        self,
        relay: ErrorSimulator,
        stdin: Optional[IO[str]] = None,
        stdout: Optional[IO[str]] = None,
    ):
        super().__init__(stdin, stdout)
        self.relay = relay

    @property
    def faults(self) -> FaultSwitch:
        return self.relay.faults

    def _arm(self, line: str) -> None:
        try:
            policy = parse_fault_command(line.split())
        except InvalidCommand as exc:
            self.say(f"Invalid command: {exc}")
            return
        self.faults.arm(policy)
        self.say(f"System set to {policy}")

    def do_normal(self, arg: str) -> bool:
        """normal: relay every packet untouched"""
        self._arm("normal " + arg)
        return False

    def do_lose(self, arg: str) -> bool:
        """lose <rrq|wrq|data|ack> [block]: drop that packet once"""
        self._arm("lose " + arg)
        return False

    def do_duplicate(self, arg: str) -> bool:
        """duplicate <rrq|wrq|data|ack> [block] <delayMs>: send that packet again after delayMs"""
        self._arm("duplicate " + arg)
        return False

    def do_delay(self, arg: str) -> bool:
        """delay <rrq|wrq|data|ack> [block] <delayMs>: hold that packet back for delayMs"""
        self._arm("delay " + arg)
        return False

    def do_invalid(self, arg: str) -> bool:
        """invalid <opcode|mode|filename|block|tid> <rrq|wrq|data|ack> [block]: corrupt that packet once"""
        self._arm("invalid " + arg)
        return False

    def do_status(self, arg: str) -> bool:
        """status: show the armed fault"""
        self.say(f"armed: {self.faults.snapshot()}")
        return False

    def do_quit(self, arg: str) -> bool:
        """quit: stop relaying and exit"""
        self.relay.shutdown(cancel=True)
        self.say("error simulator shut down")
        return True

    do_EOF = do_quit
