import unittest

from casclient import CASClient, extract_logout_ticket

LOGOUT_REQUEST = """<samlp:LogoutRequest
    xmlns:samlp="urn:oasis:names:tc:SAML:2.0:protocol"
    xmlns:saml="urn:oasis:names:tc:SAML:2.0:assertion"
    ID="LR-1-abcdef" Version="2.0" IssueInstant="2026-10-19T10:00:00Z">
  <saml:NameID>@NOT_USED@</saml:NameID>
  <samlp:SessionIndex>
    ST-12345-abcdefghijklmnop
  </samlp:SessionIndex>
</samlp:LogoutRequest>"""


class ExtractLogoutTicketTestCase(unittest.TestCase):

    def test_session_index(self):
        self.assertEqual(extract_logout_ticket({'logoutRequest': LOGOUT_REQUEST}),
                         'ST-12345-abcdefghijklmnop')

    def test_list_valued_form(self):
        # parse_qs style forms
        form = {'logoutRequest': [LOGOUT_REQUEST]}
        self.assertEqual(extract_logout_ticket(form),
                         'ST-12345-abcdefghijklmnop')

    def test_missing_field(self):
        self.assertIsNone(extract_logout_ticket({'username': 'jdoe'}))
        self.assertIsNone(extract_logout_ticket({}))
        self.assertIsNone(extract_logout_ticket(None))

    def test_unparsable_xml(self):
        self.assertIsNone(extract_logout_ticket(
            {'logoutRequest': '<samlp:LogoutRequest><oops'}))

    def test_undeclared_prefix(self):
        self.assertEqual(extract_logout_ticket(
            {'logoutRequest':
             '<samlp:LogoutRequest><samlp:SessionIndex>ST-1'
             '</samlp:SessionIndex></samlp:LogoutRequest>'}), 'ST-1')

    def test_undeclared_saml_namespaces(self):
        payload = ('<samlp:LogoutRequest ID="LR-2" Version="2.0">'
                   '<saml:NameID>@NOT_USED@</saml:NameID>'
                   '<samlp:SessionIndex>ST-12345</samlp:SessionIndex>'
                   '</samlp:LogoutRequest>')
        self.assertEqual(extract_logout_ticket({'logoutRequest': payload}),
                         'ST-12345')

    def test_no_session_index(self):
        self.assertIsNone(extract_logout_ticket(
            {'logoutRequest': '<LogoutRequest><NameID>x</NameID></LogoutRequest>'}))


class HandleSingleSignoutTestCase(unittest.TestCase):

    def setUp(self):
        self.client = CASClient('https://cas.example.com/cas')

    def test_post(self):
        ticket = self.client.handle_single_signout(
            {'REQUEST_METHOD': 'POST'}, {'logoutRequest': LOGOUT_REQUEST})
        self.assertEqual(ticket, 'ST-12345-abcdefghijklmnop')

    def test_get_ignored(self):
        ticket = self.client.handle_single_signout(
            {'REQUEST_METHOD': 'GET'}, {'logoutRequest': LOGOUT_REQUEST})
        self.assertIsNone(ticket)
