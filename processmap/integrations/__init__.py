"""processmap.integrations — outbound calls and integration fixtures.

Every real outbound HTTP call made during a test run goes through
http_gateway.ReadOnlyHttpGateway; services never call ``requests``
directly.

Modules:
  http_gateway.ReadOnlyHttpGateway  — GET/HEAD-only gateway used by
                                      production_readonly runs
  meetingbaas_mock                  — MeetingBaaS mock configs and a
                                      deterministic test-data generator
"""
