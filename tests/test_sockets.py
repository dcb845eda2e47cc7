"""
Tests for mapped UDP sockets and local port ranges.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from upnp_portmap.sockets import MappedUDPSocket, PortRange, is_specified_ip, open_socket


class TestPortRange:
    """Tests for the round-robin port range."""

    def test_starts_at_base(self):
        port_range = PortRange(5000, 5002)
        assert port_range.next_port() == 5000
        assert port_range.next_port() == 5001

    def test_wraps(self):
        port_range = PortRange(5000, 5001)
        ports = [port_range.next_port() for _ in range(4)]
        assert ports == [5000, 5001, 5000, 5001]

    def test_length(self):
        assert len(PortRange(5000, 5999)) == 1000
        assert len(PortRange(6000, 5000)) == 0

    def test_validity(self):
        assert PortRange(5000, 5999).valid
        assert not PortRange(0, 10).valid
        assert not PortRange(6000, 5000).valid
        assert not PortRange(5000, 70000).valid


class TestSpecifiedIP:
    """Tests for wildcard address detection."""

    def test_specified(self):
        assert is_specified_ip("192.0.2.1")
        assert is_specified_ip("::1")

    def test_unspecified(self):
        assert not is_specified_ip("0.0.0.0")
        assert not is_specified_ip("::")
        assert not is_specified_ip("")
        assert not is_specified_ip("gateway.local")


class TestMappedUDPSocket:
    """Tests for the mapped socket."""

    @pytest.mark.asyncio
    async def test_send_and_receive(self):
        a = MappedUDPSocket()
        b = MappedUDPSocket()
        assert await a.bind("127.0.0.1", 0)
        assert await b.bind("127.0.0.1", 0)

        try:
            a.sendto(b"hello", b.bind_address)
            data, addr = await b.recvfrom(timeout=2)

            assert data == b"hello"
            assert addr[1] == a.port
        finally:
            await a.close()
            await b.close()

    @pytest.mark.asyncio
    async def test_bind_conflict(self):
        a = MappedUDPSocket()
        b = MappedUDPSocket()
        assert await a.bind("127.0.0.1", 0)

        try:
            assert await b.bind("127.0.0.1", a.port) is False
            assert not b.is_open
        finally:
            await a.close()

    @pytest.mark.asyncio
    async def test_local_address_without_mapping(self):
        sock = MappedUDPSocket()
        await sock.bind("127.0.0.1", 0)

        try:
            assert sock.get_local_address() == ("127.0.0.1", sock.port)
        finally:
            await sock.close()

    @pytest.mark.asyncio
    async def test_masqueraded_address(self):
        sock = MappedUDPSocket()
        await sock.bind("127.0.0.1", 0)
        sock.set_masq_address("203.0.113.7", 55001)

        try:
            assert sock.get_local_address() == ("203.0.113.7", 55001)
        finally:
            await sock.close()

    @pytest.mark.asyncio
    async def test_unspecified_masq_address_ignored(self):
        sock = MappedUDPSocket()
        await sock.bind("127.0.0.1", 0)
        sock.set_masq_address("0.0.0.0", 55001)

        try:
            assert sock.get_local_address() == ("127.0.0.1", sock.port)
        finally:
            await sock.close()

    @pytest.mark.asyncio
    async def test_close_releases_mapping(self):
        nat_method = MagicMock()
        nat_method.remove_map = AsyncMock(return_value=True)
        sock = MappedUDPSocket(nat_method)
        await sock.bind("127.0.0.1", 0)
        sock.set_masq_address("203.0.113.7", 55001)

        await sock.close()
        await sock.close()

        nat_method.remove_map.assert_awaited_once_with(55001)
        assert not sock.is_open

    @pytest.mark.asyncio
    async def test_close_without_mapping(self):
        nat_method = MagicMock()
        nat_method.remove_map = AsyncMock()
        sock = MappedUDPSocket(nat_method)
        await sock.bind("127.0.0.1", 0)

        await sock.close()

        nat_method.remove_map.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_closed_socket(self):
        sock = MappedUDPSocket()

        assert sock.port == 0
        with pytest.raises(ConnectionError):
            sock.sendto(b"x", ("127.0.0.1", 9))
        with pytest.raises(ConnectionError):
            await sock.recvfrom(timeout=0.1)

    @pytest.mark.asyncio
    async def test_receive_timeout(self):
        sock = MappedUDPSocket()
        await sock.bind("127.0.0.1", 0)

        try:
            with pytest.raises(asyncio.TimeoutError):
                await sock.recvfrom(timeout=0.05)
        finally:
            await sock.close()


class TestOpenSocket:
    """Tests for binding inside a port range."""

    @pytest.mark.asyncio
    async def test_skips_busy_port(self):
        busy = MappedUDPSocket()
        await busy.bind("127.0.0.1", 0)
        port_range = PortRange(busy.port, busy.port + 1)
        sock = MappedUDPSocket()

        try:
            assert await open_socket(sock, port_range, "127.0.0.1")
            assert sock.port == busy.port + 1
        finally:
            await busy.close()
            await sock.close()

    @pytest.mark.asyncio
    async def test_exhausted_range(self):
        busy = MappedUDPSocket()
        await busy.bind("127.0.0.1", 0)
        port_range = PortRange(busy.port, busy.port)
        sock = MappedUDPSocket()

        try:
            assert await open_socket(sock, port_range, "127.0.0.1") is False
            assert not sock.is_open
        finally:
            await busy.close()
