"""Built-in rule sets for common daemons.

Every pattern captures the offending address in the ``ip`` group and,
where the log carries one, the account in ``account``. Order matters:
the first rule in a set that matches a line decides its classification.
"""

# Syslog prefix: "Jan  5 10:00:00 host " or an ISO timestamp, optional host
SYSLOG = r'^(?:\S+|\S+\s+\d+\s+\S+) (?:\S+ )?'
APACHE_ERROR = (
    r'^\[\S+\s+\S+\s+\S+\s+\S+\s+\S+\] \[(?:\S*:)?(?:error|info)\] '
    r'(?:\[pid \d+(?::tid \d+)?\] )?\[(?:client|remote) (?P<ip>\S+)\]'
)

SSH_PORTS = (22,)
POP3_PORTS = (110, 995)
IMAP_PORTS = (143, 993)
FTP_PORTS = (20, 21)
WEB_PORTS = (80, 443)
SMTP_PORTS = (25, 465, 587)
DNS_PORTS = (53,)
CPANEL_PORTS = (2082, 2083, 2086, 2087, 2095, 2096)

# name -> list of rule definitions, in evaluation order
BUILTIN_RULES = {
    "sshd": [
        {
            "pattern": SYSLOG + r'sshd\[\d+\]: pam_unix\(sshd:auth\): authentication failure; '
                                r'logname=\S* uid=\S* euid=\S* tty=\S* ruser=\S* rhost=(?P<ip>\S+)\s*(?:user=(?P<account>\S+))?',
            "classification": "sshd",
            "description": "Failed SSH login from",
            "ports": SSH_PORTS,
        },
        {
            "pattern": SYSLOG + r'sshd\[\d+\]: Failed none for (?P<account>\S*) from (?P<ip>\S+) port \S+',
            "classification": "sshd",
            "description": "Failed SSH login from",
            "ports": SSH_PORTS,
        },
        {
            "pattern": SYSLOG + r'sshd\[\d+\]: Failed password for (?:invalid user |illegal user )?'
                                r'(?P<account>\S*) from (?P<ip>\S+)(?: port \S+ \S+\s*)?',
            "classification": "sshd",
            "description": "Failed SSH login from",
            "ports": SSH_PORTS,
        },
        {
            "pattern": SYSLOG + r'sshd\[\d+\]: Failed keyboard-interactive(?:/pam)? for (?:invalid user )?'
                                r'(?P<account>\S*) from (?P<ip>\S+) port \S+',
            "classification": "sshd",
            "description": "Failed SSH login from",
            "ports": SSH_PORTS,
        },
        {
            "pattern": SYSLOG + r'sshd\[\d+\]: (?:Invalid|Illegal) user (?P<account>\S*) from (?P<ip>\S+)',
            "classification": "sshd",
            "description": "Failed SSH login from",
            "ports": SSH_PORTS,
        },
        {
            "pattern": SYSLOG + r'sshd\[\d+\]: User (?P<account>\S*) from (?P<ip>\S+)\s* '
                                r'not allowed because not listed in AllowUsers',
            "classification": "sshd",
            "description": "Failed SSH login from",
            "ports": SSH_PORTS,
        },
        {
            "pattern": SYSLOG + r'sshd\[\d+\]: Did not receive identification string from (?P<ip>\S+)',
            "classification": "sshd",
            "description": "Failed SSH login from",
            "ports": SSH_PORTS,
        },
        {
            "pattern": SYSLOG + r'sshd\[\d+\]: refused connect from (?P<ip>\S+)',
            "classification": "sshd",
            "description": "Failed SSH login from",
            "ports": SSH_PORTS,
        },
        {
            "pattern": SYSLOG + r'sshd\[\d+\]: error: maximum authentication attempts exceeded for '
                                r'(?P<account>\S*) from (?P<ip>\S+)',
            "classification": "sshd",
            "description": "Failed SSH login from",
            "ports": SSH_PORTS,
        },
    ],
    "dovecot": [
        {
            "pattern": SYSLOG + r'dovecot(?:\[\d+\])?: pop3-login: (?:Disconnected: )?'
                                r'(?:Aborted login(?: by logging out)?|Connection closed|Disconnected|Disconnected: Inactivity)'
                                r'(?::\s*\S+\sfailed: Connection reset by peer)?'
                                r'(?:\s*\(auth failed, \d+ attempts(?: in \d+ secs)?\))?: '
                                r'(?:user=<?(?P<account>[^>,\s]*)>?, )?(?:method=\S+, )?rip=(?P<ip>[^,\s]+), lip=',
            "classification": "pop3d",
            "description": "Failed POP3 login from",
            "ports": POP3_PORTS,
        },
        {
            "pattern": SYSLOG + r'dovecot(?:\[\d+\])?: imap-login: (?:Disconnected: )?'
                                r'(?:Aborted login(?: by logging out)?|Connection closed|Disconnected|Disconnected: Inactivity)'
                                r'(?::\s*\S+\sfailed: Connection reset by peer)?'
                                r'(?:\s*\(auth failed, \d+ attempts(?: in \d+ secs)?\))?: '
                                r'(?:user=<?(?P<account>[^>,\s]*)>?, )?(?:method=\S+, )?rip=(?P<ip>[^,\s]+), lip=',
            "classification": "imapd",
            "description": "Failed IMAP login from",
            "ports": IMAP_PORTS,
        },
    ],
    "ftpd": [
        {
            "pattern": SYSLOG + r'pure-ftpd(?:\[\d+\])?: \(\?@(?P<ip>\S+)\) \[WARNING\] '
                                r'Authentication failed for user \[(?P<account>\S*)\]',
            "classification": "ftpd",
            "description": "Failed FTP login from",
            "ports": FTP_PORTS,
        },
        {
            "pattern": SYSLOG + r'proftpd\[\d+\]:? \S+ \([^\[]+\[(?P<ip>\S+)\]\)(?: -)?:? '
                                r'- no such user \'(?P<account>\S*)\'',
            "classification": "ftpd",
            "description": "Failed FTP login from",
            "ports": FTP_PORTS,
        },
        {
            "pattern": SYSLOG + r'proftpd\[\d+\]:? \S+ \([^\[]+\[(?P<ip>\S+)\]\)(?: -)?:? '
                                r'- USER (?P<account>\S*) \(Login failed\): Incorrect password',
            "classification": "ftpd",
            "description": "Failed FTP login from",
            "ports": FTP_PORTS,
        },
        {
            "pattern": r'^\S+\s+\S+\s+\d+\s+\S+\s+\d+ \[pid \d+\] \[(?P<account>\S+)\] '
                       r'FAIL LOGIN: Client "(?P<ip>[^"]+)"',
            "classification": "ftpd",
            "description": "Failed FTP login from",
            "ports": FTP_PORTS,
        },
        {
            "pattern": SYSLOG + r'vsftpd(?:\(pam_unix\))?\[\d+\]: (?:pam_unix\(\S+\): )?authentication failure; '
                                r'logname=\S*\s+\S+\s+\S+\s+\S+\s+ruser=\S*\s+rhost=(?P<ip>\S+)'
                                r'(?:\s+user=(?P<account>\S*))?',
            "classification": "ftpd",
            "description": "Failed FTP login from",
            "ports": FTP_PORTS,
        },
    ],
    "htpasswd": [
        {
            "pattern": APACHE_ERROR + r' (?:\w+: )?user (?P<account>\S*)'
                                      r'(?: not found:|: authentication failure for)',
            "classification": "htpasswd",
            "description": "Failed web page login from",
            "ports": WEB_PORTS,
        },
        {
            "pattern": r'^\S+ \S+ \[error\] \S+ \*\S+ no user/password was provided for basic authentication, '
                       r'client: (?P<ip>[^,\s]+),',
            "classification": "htpasswd",
            "description": "Failed web page login from",
            "ports": WEB_PORTS,
        },
        {
            "pattern": r'^\S+ \S+ \[error\] \S+ \*\S+ user "(?P<account>\S*)": password mismatch, '
                       r'client: (?P<ip>[^,\s]+),',
            "classification": "htpasswd",
            "description": "Failed web page login from",
            "ports": WEB_PORTS,
        },
        {
            "pattern": r'^\S+ \S+ \[error\] \S+ \*\S+ user "(?P<account>\S*)" was not found in "[^"]*", '
                       r'client: (?P<ip>[^,\s]+),',
            "classification": "htpasswd",
            "description": "Failed web page login from",
            "ports": WEB_PORTS,
        },
    ],
    "modsec": [
        {
            "pattern": r'^\[\S+\s+\S+\s+\S+\s+\S+\s+\S+\] \[error\] \[(?:client|remote) (?P<ip>\S+)\] '
                       r'mod_security: Access denied',
            "classification": "mod_security",
            "description": "mod_security triggered by",
            "ports": WEB_PORTS,
        },
        {
            "pattern": APACHE_ERROR + r'(?: \[client \S+\])? (?:\w+: )?ModSecurity:(?:(?: \[[^\]]+\])*)? '
                                      r'Access denied(?:.*?\[id "(?P<ruleid>\d+)"\])?(?:.*?\[hostname "(?P<domain>[^"]+)"\])?',
            "classification": "mod_security",
            "description": "mod_security triggered by",
            "ports": WEB_PORTS,
        },
        {
            "pattern": r'^\S+ \S+ \[\S+\] \S+ \[(?:client|remote) (?P<ip>\S+)\] ModSecurity:(?:(?: \[[^\]]+\])*)? '
                       r'Access denied(?:.*?\[id "(?P<ruleid>\d+)"\])?',
            "classification": "mod_security",
            "description": "mod_security triggered by",
            "ports": WEB_PORTS,
        },
    ],
    "smtpauth": [
        {
            "pattern": r'^\S+\s+\S+\s+(?:\[\d+\] )?\S+ authenticator failed for \S+ (?:\S+ )?\[(?P<ip>[^\]]+)\]'
                       r'(?::\S*:?)?(?: I=\S+| \d+:)? 535 Incorrect authentication data'
                       r'(?: \(set_id=(?P<account>\S+)\))?',
            "classification": "smtpauth",
            "description": "Failed SMTP AUTH login from",
            "ports": SMTP_PORTS,
        },
        {
            "pattern": r'^\S+\s+\S+\s+(?:\[\d+\] )?SMTP call from (?:\S+ )?\[(?P<ip>[^\]]+)\](?::\S*:?)?(?: I=\S+)? '
                       r'dropped: too many syntax or protocol errors',
            "classification": "eximsyntax",
            "description": "Exim syntax errors from",
            "ports": SMTP_PORTS,
        },
        {
            "pattern": r'^\S+\s+\S+\s+(?:\[\d+\] )?SMTP protocol error in "[^"]+" H=\S+ (?:\S+ )?\[(?P<ip>[^\]]+)\]'
                       r'(?::\S*:?)?(?: I=\S+)? AUTH command used when not advertised',
            "classification": "eximsyntax",
            "description": "Exim syntax errors from",
            "ports": SMTP_PORTS,
        },
    ],
    "bind": [
        {
            "pattern": SYSLOG + r'named\[\d+\]: client(?: \S+)? (?P<ip>[^#\s]+)#\d+(?:\s\(\S+\))?:'
                                r'(?: view external:)? (?:update|zone transfer|query \(cache\)) \'[^\']*\' denied$',
            "classification": "bind",
            "description": "bind triggered by",
            "ports": DNS_PORTS,
        },
    ],
    "apache404": [
        {
            "pattern": APACHE_ERROR + r' (?:\w+: )?File does not exist:',
            "classification": "apache404",
            "description": "Excessive 404 requests from",
            "ports": WEB_PORTS,
        },
    ],
    "apache403": [
        {
            "pattern": APACHE_ERROR + r' (?:\w+: )?client denied by server configuration:',
            "classification": "apache403",
            "description": "Excessive 403 requests from",
            "ports": WEB_PORTS,
        },
    ],
    "apache401": [
        {
            "pattern": APACHE_ERROR + r' (?:\w+: )?(?:user  not found|user (?P<account>\w+) not found'
                                      r'|user \w+: authentication failure for "/\w+/"):',
            "classification": "apache401",
            "description": "Excessive 401 requests from",
            "ports": WEB_PORTS,
        },
    ],
    "cpanel": [
        {
            "pattern": r'^\[\S+\s+\S+\s+\S+\] \w+ \[\w+\] (?P<ip>\S+) - (?P<account>\S+) "[^"]+" FAILED LOGIN',
            "classification": "cpanel",
            "description": "Failed cPanel login from",
            "ports": CPANEL_PORTS,
        },
        {
            "pattern": r'^(?P<ip>\S+) - (?P<account>\S+)? \[\S+ \S+\] "[^"]*" FAILED LOGIN',
            "classification": "cpanel",
            "description": "Failed cPanel login from",
            "ports": CPANEL_PORTS,
        },
    ],
    "suhosin": [
        {
            # memory_limit warnings are configuration noise, not attacks
            "pattern": SYSLOG + r'suhosin\[\d+\]: ALERT - (?!.*script tried to increase memory_limit)'
                                r'.* \(attacker \'(?P<ip>[^\'\s]+)\'',
            "classification": "suhosin",
            "description": "Suhosin triggered by",
            "ports": WEB_PORTS,
        },
    ],
    "portscan": [
        {
            "pattern": SYSLOG + r'kernel(?:\[\d+\])?:\s(?:\[[^\]]+\]\s)?Firewall: \*(?:TCP|UDP)_IN Blocked\* '
                                r'.*?SRC=(?P<ip>\S+) .*?DPT=\d+',
            "classification": "portscan",
            "description": "Port scan detected from",
        },
    ],
    "portknock": [
        {
            "pattern": SYSLOG + r'kernel(?:\[\d+\])?:\s(?:\[[^\]]+\]\s)?Knock: \*\d+_IN\* '
                                r'.*?SRC=(?P<ip>\S+) .*?DPT=\d+',
            "classification": "portknock",
            "description": "Port knock from",
        },
    ],
}
