"""IANA assigned internet protocol numbers."""

from __future__ import annotations

import enum


class IPProtocol(enum.IntEnum):
    """Protocol numbers as carried in the IPv4 protocol / IPv6 next-header field."""

    IP = 0  # IPv4 encapsulation, pseudo protocol number
    HOPOPT = 0  # IPv6 Hop-by-Hop Option
    ICMP = 1
    IGMP = 2
    GGP = 3
    IPV4 = 4
    ST = 5
    TCP = 6
    CBT = 7
    EGP = 8
    IGP = 9
    BBNRCCMON = 10
    NVPII = 11
    PUP = 12
    EMCON = 14
    XNET = 15
    CHAOS = 16
    UDP = 17
    MUX = 18
    DCNMEAS = 19
    HMP = 20
    PRM = 21
    XNSIDP = 22
    TRUNK1 = 23
    TRUNK2 = 24
    LEAF1 = 25
    LEAF2 = 26
    RDP = 27
    IRTP = 28
    ISOTP4 = 29
    NETBLT = 30
    MFENSP = 31
    MERITINP = 32
    DCCP = 33
    THREE_PC = 34  # Third Party Connect Protocol
    IDPR = 35
    XTP = 36
    DDP = 37
    IDPRCMTP = 38
    TPPP = 39
    IL = 40
    IPV6 = 41
    SDRP = 42
    IPV6_ROUTE = 43
    IPV6_FRAG = 44
    IDRP = 45
    RSVP = 46
    GRE = 47
    DSR = 48
    BNA = 49
    ESP = 50
    AH = 51
    INLSP = 52
    NARP = 54
    MOBILE = 55
    TLSP = 56
    SKIP = 57
    IPV6_ICMP = 58
    IPV6_NONXT = 59
    IPV6_OPTS = 60
    CFTP = 62
    SATEXPAK = 64
    KRYPTOLAN = 65
    RVD = 66
    IPPC = 67
    SATMON = 69
    VISA = 70
    IPCV = 71
    CPNX = 72
    CPHB = 73
    WSN = 74
    PVP = 75
    BRSATMON = 76
    SUNND = 77
    WBMON = 78
    WBEXPAK = 79
    ISOIP = 80
    VMTP = 81
    SECUREVMTP = 82
    VINES = 83
    TTP = 84
    IPTM = 84
    NSFNETIGP = 85
    DGP = 86
    TCF = 87
    EIGRP = 88
    OSPFIGP = 89
    SPRITE_RPC = 90
    LARP = 91
    MTP = 92
    AX25 = 93
    IPIP = 94
    SCCSP = 96
    ETHERIP = 97
    ENCAP = 98
    GMTP = 100
    IFMP = 101
    PNNI = 102
    PIM = 103
    ARIS = 104
    SCPS = 105
    QNX = 106
    AN = 107
    IPCOMP = 108
    SNP = 109
    COMPAQ_PEER = 110
    IPX_IN_IP = 111
    VRRP = 112
    PGM = 113
    L2TP = 115
    DDX = 116
    IATP = 117
    STP = 118
    SRP = 119
    UTI = 120
    SMP = 121
    PTP = 123
    ISIS = 124
    FIRE = 125
    CRTP = 126
    CRUDP = 127
    SSCOPMCE = 128
    IPLT = 129
    SPS = 130
    PIPE = 131
    SCTP = 132
    FC = 133
    RSVP_E2E_IGNORE = 134
    MOBILITY_HEADER = 135
    UDPLITE = 136
    MPLS_IN_IP = 137
    MANET = 138
    HIP = 139
    SHIM6 = 140
    WESP = 141
    ROHC = 142
    RESERVED = 255

    @classmethod
    def from_name(cls, name):
        """Look a protocol up by name, ignoring case, dashes and underscores."""
        key = _normalise(name)
        try:
            return _BY_NAME[key]
        except KeyError:
            raise ValueError(f"unknown IP protocol {name!r}") from None


def _normalise(name: str) -> str:
    return name.upper().replace("_", "").replace("-", "")


_BY_NAME = {_normalise(name): member for name, member in IPProtocol.__members__.items()}
_BY_NAME["3PC"] = IPProtocol.THREE_PC