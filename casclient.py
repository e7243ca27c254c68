"""
casclient.py
CAS Client Library for Python

Requirements:
  CAS 2.0 / 3.0 Server (serviceValidate & proxyValidate)

Basic Usage:
  * Web server acting as CAS Client needs one protected URL:
  {
    SERVICE_URL - The first visit (no ticket) is redirected to :
                      BASE_URL+"/login?service="+SERVICE_URL
                  The CAS server sends the user back to SERVICE_URL with
                  a ticket in the query string (GET). This page calls
                  'validate' and records the user as authorized.
  }

    client = CASClient('https://sso.example.com/cas')
    result = client.authenticate(environ)
    if isinstance(result, CASRedirect):
        return result(environ, start_response)
    # result.username, result.attributes ...

  * Tickets starting with 'PT-' are proxy tickets and are checked against
    /proxyValidate, every other ticket against /serviceValidate.

Attributes:
  * Three attribute encodings are understood and flattened into
    { 'attr1': ['val1', 'val2'], 'attr2': ['val1'], ... }

    Jasig style      - <cas:attributes><cas:mail>..</cas:mail></cas:attributes>
    RubyCAS style    - <cas:mail>..</cas:mail> next to <cas:user>
    Name-Value style - <cas:attribute name='mail' value='..' />

Single Sign-Out:
  * The CAS server POSTs a SAML 'logoutRequest' to every service a user
    logged into. Pass the parsed form to 'handle_single_signout' to get the
    original ticket back, then drop the session that was opened with it.
"""
from collections import namedtuple
from html import escape
from urllib.parse import parse_qsl, quote, urlencode, urlsplit
from xml.dom.minidom import parseString
from xml.sax import SAXException, make_parser
import logging
import posixpath

import requests

__all__ = ['CASClient', 'CASConfig', 'CASEndpoint', 'CASRedirect',
           'ValidationResult', 'HTTPTransport',
           'CASError', 'ConfigurationError', 'TransportError',
           'ProtocolError', 'ValidationError',
           'make_config', 'parse_attributes', 'parse_validation_response',
           'build_login_url', 'build_logout_url', 'extract_logout_ticket',
           'get_service_url']

MAX_RESPONSE_SIZE = 1000000
DEFAULT_PORTS = {'https': 443, 'http': 80}

# Children of authenticationSuccess that are never attributes
PROTOCOL_TAGS = ('user', 'proxies', 'proxygrantingticket')
############################################################################


class CASError(Exception):
    """Base class for everything raised by this module."""


class ConfigurationError(CASError):
    pass


class TransportError(CASError):
    pass


class ProtocolError(CASError):
    """The CAS server answered with something that is not a CAS response."""


class ValidationError(CASError):
    """
    The CAS server rejected the ticket (authenticationFailure).
    `code` is the server supplied failure code, e.g. INVALID_TICKET
    """
    def __init__(self, code, text):
        self.code = code
        self.text = text
        super().__init__("Validation failed [%s]: %s" % (code, text))


############################################################################

CASEndpoint = namedtuple('CASEndpoint', ['scheme', 'host', 'port', 'path'])

CASConfig = namedtuple('CASConfig', ['base', 'validate', 'service',
                                     'verify_ssl', 'timeout'])

ValidationResult = namedtuple('ValidationResult', [
    'username', 'attributes', 'proxy_granting_ticket', 'ticket', 'proxies'])


def _parse_endpoint(url, option):
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    if scheme not in DEFAULT_PORTS:
        raise ConfigurationError(
            "Option `%s` must be an http(s) url, got %r" % (option, url))
    try:
        port = parts.port
    except ValueError:
        raise ConfigurationError(
            "Option `%s` has an invalid port: %r" % (option, url))
    if not parts.hostname:
        raise ConfigurationError(
            "Option `%s` must be a valid url like: "
            "https://example.com/cas" % option)
    return CASEndpoint(scheme, parts.hostname,
                       port or DEFAULT_PORTS[scheme], parts.path)


def make_config(base_url, validate_url=None, service=None,
                verify_ssl=True, timeout=None):
    """
    Build the immutable client configuration.

    base_url - Full URL to the CAS server, including the base path, e.g.
      https://www.example.com/cas
    validate_url - URL used for ticket validation, defaults to base_url.
    service - Default service URL, can be overridden per validate() call.
    verify_ssl - Verify the CAS server certificate.
    timeout - Seconds to wait on the CAS server, None waits forever.
    """
    if not base_url:
        raise ConfigurationError("Required CAS option `base_url` missing.")
    base = _parse_endpoint(base_url, 'base_url')
    if base.scheme != 'https':
        raise ConfigurationError("Only https CAS servers are supported.")
    if validate_url:
        validate = _parse_endpoint(validate_url, 'validate_url')
    else:
        validate = base
    return CASConfig(base, validate, service or None,
                     bool(verify_ssl), timeout)


def _format_url(scheme, host, port, path, query=None):
    netloc = '[%s]' % host if ':' in host else host
    if port != DEFAULT_PORTS.get(scheme):
        netloc += ':%d' % port
    url = "%s://%s%s" % (scheme, netloc, path)
    if query:
        url += '?' + query
    return url


def _join_path(prefix, name):
    return posixpath.join(prefix or '/', name)


def _encode(params):
    return urlencode(params, quote_via=quote)


############################################################################
# XML helpers. Tag names are compared without their namespace prefix and
# case-insensitively, servers disagree on both.

def _local_name(node):
    return node.nodeName.split(':')[-1].lower()


def _element_children(node):
    return [child for child in node.childNodes
            if child.nodeType == child.ELEMENT_NODE]


def _find_all(node, name):
    """All descendant elements called `name`, in document order."""
    found = []
    for child in _element_children(node):
        if _local_name(child) == name:
            found.append(child)
        found.extend(_find_all(child, name))
    return found


def _find_first(node, name):
    found = _find_all(node, name)
    return found[0] if found else None


def _find_child(node, name):
    for child in _element_children(node):
        if _local_name(child) == name:
            return child
    return None


def _parse_xml(text):
    # Namespace processing off, undeclared cas: and samlp: prefixes are common
    return parseString(text, parser=make_parser())


def _text(node):
    parts = []
    for child in node.childNodes:
        if child.nodeType in (child.TEXT_NODE, child.CDATA_SECTION_NODE):
            parts.append(child.data)
        elif child.nodeType == child.ELEMENT_NODE:
            parts.append(_text(child))
    return ''.join(parts)


############################################################################
# Attribute parsing

def _jasig_attributes(success_node):
    """
    "Jasig Style" attributes:

      <cas:authenticationSuccess>
          <cas:user>jsmith</cas:user>
          <cas:attributes>
              <cas:surname>Smith</cas:surname>
              <cas:memberOf>CN=Staff,OU=Groups,DC=example,DC=edu</cas:memberOf>
              <cas:memberOf>CN=Spanish Department,OU=Departments</cas:memberOf>
          </cas:attributes>
      </cas:authenticationSuccess>

    Returns None when there is no non-empty attributes block.
    """
    block = _find_child(success_node, 'attributes')
    if block is None:
        return None
    children = _element_children(block)
    if not children:
        return None
    attributes = {}
    for child in children:
        attributes.setdefault(_local_name(child), []).append(
            _text(child).strip())
    return attributes


def _rubycas_attributes(success_node):
    """
    "RubyCAS Style" attributes, siblings of the protocol fields:

      <cas:authenticationSuccess>
          <cas:user>jsmith</cas:user>
          <cas:surname>Smith</cas:surname>
          <cas:memberOf>CN=Staff,OU=Groups,DC=example,DC=edu</cas:memberOf>
          <cas:proxyGrantingTicket>PGTIOU-84678-8a9d2</cas:proxyGrantingTicket>
      </cas:authenticationSuccess>
    """
    attributes = {}
    for child in _element_children(success_node):
        name = _local_name(child)
        if name in PROTOCOL_TAGS:
            continue
        value = _text(child).strip()
        if value:
            attributes.setdefault(name, []).append(value)
    return attributes


def _name_value_attributes(success_node):
    """
    "Name-Value" attributes:

      <cas:authenticationSuccess>
          <cas:user>jsmith</cas:user>
          <cas:attribute name='surname' value='Smith' />
          <cas:attribute name='memberOf' value='CN=Staff,OU=Groups' />
      </cas:authenticationSuccess>
    """
    attributes = {}
    for node in _find_all(success_node, 'attribute'):
        attributes.setdefault(node.getAttribute('name'), []).append(
            node.getAttribute('value'))
    return attributes


def parse_attributes(success_node):
    """
    Parse a cas:authenticationSuccess DOM node for CAS attributes.
    Supports Jasig style, RubyCAS style, and Name-Value, in that order.
    Name-Value is only consulted when the other two found nothing.

    Returns
      {
          'attr1': ['attr1-val1', 'attr1-val2', ...],
          'attr2': ['attr2-val1', ...],
      }
    """
    attributes = _jasig_attributes(success_node)
    if attributes is None:
        attributes = _rubycas_attributes(success_node)
    if not attributes:
        attributes = _name_value_attributes(success_node)
    return attributes


############################################################################

def _parse_proxies(success_node):
    return [_text(node).strip()
            for node in _find_all(success_node, 'proxies')]


def parse_validation_response(response, ticket):
    """
    Interpret the body of a serviceValidate/proxyValidate call.
    Returns a ValidationResult or raises ValidationError/ProtocolError.
    """
    try:
        doc = _parse_xml(response)
    except (SAXException, TypeError, ValueError) as e:
        logging.warning("CASCLIENT: Unparsable validation response: %s", e)
        raise ProtocolError("Bad response format.")

    success = _find_first(doc, 'authenticationsuccess')
    if success is not None:
        user = _find_first(success, 'user')
        if user is None:
            # A compliant server always sends cas:user
            raise ProtocolError("No username?")
        username = _text(user).strip()

        pgt = _find_first(success, 'proxygrantingticket')
        pgt_iou = _text(pgt).strip() if pgt is not None else ''

        result = ValidationResult(username=username,
                                  attributes=parse_attributes(success),
                                  proxy_granting_ticket=pgt_iou,
                                  ticket=ticket,
                                  proxies=_parse_proxies(success))
        logging.info("CASCLIENT: Ticket %s validated for user %s",
                     ticket, username)
        return result

    failure = _find_first(doc, 'authenticationfailure')
    if failure is not None:
        error = ValidationError(failure.getAttribute('code'),
                                _text(failure).strip())
        logging.warning("CASCLIENT: %s", error)
        raise error

    raise ProtocolError("Bad response format.")


############################################################################

class HTTPTransport():
    """
    Fetches a CAS response body with a single GET.
    The body is buffered completely, the connection is dropped once more
    than `max_size` bytes have arrived.
    """
    def __init__(self, max_size=MAX_RESPONSE_SIZE, chunk_size=8192):
        self.max_size = max_size
        self.chunk_size = chunk_size

    def get(self, host, port, path, use_tls=True, verify_ssl=True,
            timeout=None):
        url = _format_url('https' if use_tls else 'http', host, port, path)
        body = bytearray()
        try:
            with requests.get(url, verify=verify_ssl, timeout=timeout,
                              stream=True) as response:
                if response.status_code != 200:
                    logging.warning("CASCLIENT: %s answered HTTP %s",
                                    url, response.status_code)
                for chunk in response.iter_content(self.chunk_size):
                    body.extend(chunk)
                    if len(body) > self.max_size:
                        raise TransportError(
                            "Response from %s exceeds %d bytes"
                            % (url, self.max_size))
        except requests.RequestException as e:
            logging.exception("CASCLIENT: Error retrieving a response")
            raise TransportError(str(e)) from e
        return body.decode('utf-8', 'replace')


############################################################################
# Redirects

def build_login_url(config, service_url, gateway=False):
    base = config.base
    params = [('service', service_url)]
    if gateway:
        params.append(('gateway', 'true'))
    return _format_url(base.scheme, base.host, base.port,
                       _join_path(base.path, 'login'), _encode(params))


def build_logout_url(config, return_url):
    base = config.base
    return _format_url(base.scheme, base.host, base.port,
                       _join_path(base.path, 'logout'),
                       _encode([('service', return_url)]))


class CASRedirect(namedtuple('CASRedirect', ['location'])):
    """A 307 redirect, usable as a WSGI application."""
    __slots__ = ()

    status = '307 Temporary Redirect'

    @property
    def body(self):
        location = escape(self.location)
        return '<a href="%s">%s</a>' % (location, location)

    def __call__(self, environ, start_response):
        body = self.body.encode('utf-8')
        start_response(self.status, [
            ('Location', self.location),
            ('Content-Type', 'text/html; charset=utf-8'),
            ('Content-Length', str(len(body))),
        ])
        return [body]


############################################################################
# WSGI helpers

def _host(environ):
    forwarded = environ.get('HTTP_X_FORWARDED_HOST')
    if forwarded:
        return forwarded.split(',')[0].strip()
    if environ.get('HTTP_HOST'):
        return environ['HTTP_HOST']

    host = environ['SERVER_NAME']
    port = environ.get('SERVER_PORT')
    scheme = environ.get('wsgi.url_scheme')
    if port and int(port) != DEFAULT_PORTS.get(scheme):
        host += ':' + port
    return host


def _base_url(environ):
    return environ.get('wsgi.url_scheme', 'http') + '://' + _host(environ)


def _wsgi_path(path):
    # PEP 3333 paths are latin-1 decoded bytes
    try:
        return path.encode('latin-1').decode('utf-8', 'replace')
    except UnicodeEncodeError:
        return path


def get_service_url(environ):
    """Reconstructs the request URL from environ, without any `ticket`."""
    url = _base_url(environ)
    url += quote(_wsgi_path(environ.get('SCRIPT_NAME', '')))
    url += quote(_wsgi_path(environ.get('PATH_INFO', '')))

    params = [(k, v) for (k, v)
              in parse_qsl(environ.get('QUERY_STRING', ''),
                           keep_blank_values=True)
              if k != 'ticket']
    if params:
        url += '?' + urlencode(params)
    return url


def extract_logout_ticket(form):
    """
    Pull the ticket out of a single sign-out POST:

      <samlp:LogoutRequest ID="..." Version="2.0" IssueInstant="...">
          <saml:NameID>@NOT_USED@</saml:NameID>
          <samlp:SessionIndex>ST-12345</samlp:SessionIndex>
      </samlp:LogoutRequest>

    Returns None for anything that is not a logout request.
    """
    if not form:
        return None
    payload = form.get('logoutRequest')
    if isinstance(payload, (list, tuple)):
        payload = payload[0] if payload else None
    if not payload:
        return None
    try:
        doc = _parse_xml(payload)
    except (SAXException, TypeError, ValueError) as e:
        logging.warning("CASCLIENT: Ignoring invalid logoutRequest: %s", e)
        return None
    node = _find_first(doc, 'sessionindex')
    if node is None:
        return None
    return _text(node).strip()


############################################################################

class CASClient():
    """
    Talks to a single CAS server.

    base_url - CAS server URL including the base path, must be https.
    validate_url - Alternate server used for ticket validation.
    service - Default service URL.
    verify_ssl - Verify the CAS server certificate.
    timeout - Seconds to wait for the validation response.
    transport - Anything with HTTPTransport's get(), defaults to requests.
    """
    def __init__(self, base_url, validate_url=None, service=None,
                 verify_ssl=True, timeout=None, transport=None):
        self.config = make_config(base_url, validate_url, service,
                                  verify_ssl, timeout)
        self.transport = transport or HTTPTransport()

    def _validate_path(self, ticket):
        if ticket.startswith('PT-'):
            return 'proxyValidate'
        return 'serviceValidate'

    def login_url(self, service=None, gateway=False):
        service_url = service or self.config.service
        if not service_url:
            raise ConfigurationError("Required CAS option `service` missing.")
        return build_login_url(self.config, service_url, gateway)

    def logout_url(self, return_url):
        return build_logout_url(self.config, return_url)

    # Methods
    def validate(self, ticket, service=None):
        """
        Validate `ticket` for `service` (or the configured default service).
        Returns a ValidationResult, raises ValidationError when the CAS
        server refuses the ticket.
        """
        service_url = service or self.config.service
        if not service_url:
            raise ConfigurationError("Required CAS option `service` missing.")

        endpoint = self.config.validate
        validate_path = self._validate_path(ticket)
        path = "%s?%s" % (_join_path(endpoint.path, validate_path),
                          _encode([('ticket', ticket),
                                   ('service', service_url)]))
        logging.info("CASCLIENT: /%s URL: %s", validate_path,
                     _format_url(endpoint.scheme, endpoint.host,
                                 endpoint.port, path))

        response = self.transport.get(endpoint.host, endpoint.port, path,
                                      use_tls=endpoint.scheme == 'https',
                                      verify_ssl=self.config.verify_ssl,
                                      timeout=self.config.timeout)
        return parse_validation_response(response, ticket)

    # Composite methods
    def authenticate(self, environ, service=None):
        """
        Validate the `ticket` in the query string, or send the user to
        the CAS login page when there is none.
        Returns a ValidationResult or a CASRedirect.
        """
        params = parse_qsl(environ.get('QUERY_STRING', ''))
        tickets = [v for (k, v) in params if k == 'ticket' and v]
        if not service:
            service = get_service_url(environ)
        if tickets:
            return self.validate(tickets[0], service)
        return CASRedirect(self.login_url(service))

    def logout(self, environ, return_url=None):
        """Send the user to the CAS logout page."""
        if not return_url:
            return_url = _base_url(environ)
        return CASRedirect(self.logout_url(return_url))

    def handle_single_signout(self, environ, form):
        """
        Returns the ticket named in a CAS single sign-out POST, None for
        any other request.
        """
        if environ.get('REQUEST_METHOD', '').upper() != 'POST':
            return None
        return extract_logout_ticket(form)
