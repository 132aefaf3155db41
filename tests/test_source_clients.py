"""
Tests for the literature database adapters.

HTTP is mocked with httpx.MockTransport; no test touches the network.
"""

import asyncio
from datetime import date

import httpx
import pytest

from clinical_evidence.models import DateRange, MedicalDomain
from clinical_evidence.research.source_clients import (
    AdapterFilters,
    BMCClient,
    PLOSClient,
    PubMedClient,
    RateLimitExceeded,
    TRIPClient,
    WindowRateLimiter,
    clean_text,
    query_terms,
    term_fraction_relevance,
)

PLOS_DOC = {
    "id": "10.1371/journal.pmed.0000001",
    "doi": ["10.1371/journal.pmed.0000001"],
    "title": ["Aspirin for cardiovascular prevention: a systematic review and meta-analysis"],
    "author": ["Smith J", "Doe A"],
    "journal": "PLOS Medicine",
    "publication_date": "2022-03-15T00:00:00Z",
    "abstract": ["<p>We pooled randomized trials of aspirin for the primary prevention of cardiovascular "
                 "events. Aspirin reduced major cardiovascular events but increased bleeding. The "
                 "benefit of aspirin for prevention was modest and depended on baseline risk.</p>"],
    "subject": ["/Medicine and health sciences/Cardiology"],
    "counter_total_all": 120,
}

ESEARCH_JSON = {"esearchresult": {"idlist": ["31234567"]}}

EFETCH_XML = b"""<?xml version="1.0"?>
<PubmedArticleSet>
  <PubmedArticle>
    <MedlineCitation>
      <PMID>31234567</PMID>
      <Article>
        <Journal><Title>The Lancet</Title>
          <JournalIssue><PubDate><Year>2020</Year><Month>Jun</Month><Day>5</Day></PubDate></JournalIssue>
        </Journal>
        <ArticleTitle>Aspirin in cardiovascular prevention: a meta-analysis</ArticleTitle>
        <Abstract>
          <AbstractText Label="BACKGROUND">Aspirin is used for cardiovascular prevention.</AbstractText>
          <AbstractText Label="RESULTS">Risk ratio 0.89 (95% CI 0.84-0.95).</AbstractText>
        </Abstract>
        <AuthorList>
          <Author><LastName>Smith</LastName><Initials>JA</Initials></Author>
          <Author><CollectiveName>Trialists</CollectiveName></Author>
        </AuthorList>
        <PublicationTypeList>
          <PublicationType>Journal Article</PublicationType>
          <PublicationType>Systematic Review</PublicationType>
        </PublicationTypeList>
      </Article>
      <MeshHeadingList>
        <MeshHeading><DescriptorName>Aspirin</DescriptorName></MeshHeading>
      </MeshHeadingList>
    </MedlineCitation>
    <PubmedData>
      <ArticleIdList>
        <ArticleId IdType="pubmed">31234567</ArticleId>
        <ArticleId IdType="doi">10.1016/S0140-6736(20)00001-1</ArticleId>
        <ArticleId IdType="pmc">PMC7000001</ArticleId>
      </ArticleIdList>
    </PubmedData>
  </PubmedArticle>
</PubmedArticleSet>
"""


def recording_transport(handler):
    calls = []

    def wrapped(request: httpx.Request):
        calls.append(request)
        return handler(request)

    return httpx.MockTransport(wrapped), calls


class TestHelpers:

    def test_query_terms_drop_boolean_and_short_words(self):
        terms = query_terms('("heart failure" OR "CHF") AND the 2024 of sglt2')
        assert terms == ["heart", "failure", "chf", "sglt2"]

    def test_term_fraction_relevance(self):
        assert term_fraction_relevance("aspirin lowers risk", "aspirin cardiovascular") == pytest.approx(50.0)
        assert term_fraction_relevance("anything", "") == 0.0

    def test_clean_text_strips_markup(self):
        assert clean_text("<p>Hello <b>world</b></p>") == "Hello world"
        assert clean_text(["a", None, "b"]) == "a b"
        assert clean_text(None) == ""


class TestPLOSClient:

    def test_search_normalizes_documents(self):
        transport, calls = recording_transport(
            lambda request: httpx.Response(200, json={"response": {"docs": [PLOS_DOC]}}))
        client = PLOSClient(transport=transport)
        filters = AdapterFilters(max_results=5, scoring_query="aspirin cardiovascular prevention")

        result = asyncio.run(client.search("aspirin cardiovascular prevention", filters))

        assert result.source == "PLOS"
        assert len(result) == 1
        study = result.payload[0]
        assert study.doi == "10.1371/journal.pmed.0000001"
        assert study.is_open_access
        assert study.raw_study_type == "Systematic Review"
        assert "<p>" not in study.abstract
        assert study.publication_date == "2022-03-15"
        assert study.subjects == ("Cardiology",)
        # impact 40 + views 20 + abstract 20 + reputation 20
        assert study.quality_score == 100
        # 10 word-boundary hits over 3 query terms, 20 points each
        assert study.relevance_score == pytest.approx(10 / 3 * 20)

        q = calls[0].url.params["q"]
        assert q.startswith("(aspirin cardiovascular prevention) AND (subject:")
        assert calls[0].url.params["rows"] == "5"

    def test_date_range_becomes_filter_query(self):
        transport, calls = recording_transport(
            lambda request: httpx.Response(200, json={"response": {"docs": []}}))
        client = PLOSClient(transport=transport)
        filters = AdapterFilters(date_range=DateRange(start=date(2020, 1, 1), end=date(2023, 12, 31)))

        asyncio.run(client.search("aspirin", filters))

        fq = calls[0].url.params.get_list("fq")
        assert "publication_date:[2020-01-01T00:00:00Z TO 2023-12-31T23:59:59Z]" in fq

    def test_http_error_returns_empty(self):
        transport, _ = recording_transport(lambda request: httpx.Response(503))
        result = asyncio.run(PLOSClient(transport=transport).search("aspirin"))
        assert result.source == "PLOS"
        assert len(result) == 0

    def test_malformed_payload_returns_empty(self):
        transport, _ = recording_transport(lambda request: httpx.Response(200, text="not json"))
        result = asyncio.run(PLOSClient(transport=transport).search("aspirin"))
        assert len(result) == 0

    def test_rate_limit_propagates(self):
        transport, calls = recording_transport(
            lambda request: httpx.Response(200, json={"response": {"docs": []}}))
        client = PLOSClient(transport=transport)
        client.limiter = WindowRateLimiter("PLOS", max_requests=0)
        with pytest.raises(RateLimitExceeded):
            asyncio.run(client.search("aspirin"))
        assert calls == []


class TestPubMedClient:

    def handler(self, request: httpx.Request):
        if request.url.path.endswith("esearch.fcgi"):
            return httpx.Response(200, json=ESEARCH_JSON)
        return httpx.Response(200, content=EFETCH_XML, headers={"Content-Type": "text/xml"})

    def test_esearch_then_efetch(self):
        transport, calls = recording_transport(self.handler)
        client = PubMedClient(transport=transport)
        filters = AdapterFilters(max_results=10, open_access_only=True,
                                 scoring_query="aspirin cardiovascular prevention")

        result = asyncio.run(client.search("aspirin cardiovascular prevention", filters))

        assert [c.url.path.rsplit("/", 1)[-1] for c in calls] == ["esearch.fcgi", "efetch.fcgi"]
        assert calls[0].url.params["term"].endswith("AND free full text[sb]")
        assert calls[1].url.params["id"] == "31234567"

        study = result.payload[0]
        assert study.pmid == "31234567"
        assert study.doi == "10.1016/S0140-6736(20)00001-1"
        assert study.raw_study_type == "Systematic Review"
        assert study.is_open_access
        assert study.publication_date == "2020-06-05"
        assert study.authors == ("Smith JA",)
        assert "BACKGROUND: Aspirin" in study.abstract
        assert study.subjects == ("Aspirin",)
        assert study.relevance_score == 100

    def test_no_pmids_skips_efetch(self):
        def handler(request):
            return httpx.Response(200, json={"esearchresult": {"idlist": []}})

        transport, calls = recording_transport(handler)
        result = asyncio.run(PubMedClient(transport=transport).search("nothing"))
        assert len(result) == 0
        assert len(calls) == 1

    def test_api_key_is_sent_when_configured(self):
        transport, calls = recording_transport(self.handler)
        asyncio.run(PubMedClient(api_key="k123", transport=transport).search("aspirin"))
        assert all(c.url.params["api_key"] == "k123" for c in calls)


class TestKeyedClients:

    def test_bmc_without_key_returns_empty(self):
        transport, calls = recording_transport(lambda request: httpx.Response(200, json={}))
        result = asyncio.run(BMCClient(transport=transport).search("aspirin"))
        assert result.source == "BMC"
        assert len(result) == 0
        assert calls == []

    def test_trip_without_key_returns_empty(self):
        transport, calls = recording_transport(lambda request: httpx.Response(200, text="<documents/>"))
        result = asyncio.run(TRIPClient(transport=transport).search("aspirin"))
        assert result.source == "TRIP"
        assert len(result) == 0
        assert calls == []

    def test_bmc_searches_domain_journals(self):
        record = {
            "title": "Aspirin and cardiovascular prevention: randomized controlled trial",
            "abstract": "A randomized controlled trial of aspirin for cardiovascular prevention.",
            "doi": "10.1186/s12872-023-00001-1",
            "publicationName": "BMC Cardiovascular Disorders",
            "publicationDate": "2023-01-10",
            "openaccess": "true",
            "creators": [{"creator": "Lee, K"}],
            "url": [{"format": "html", "value": "https://example.org/bmc"}],
        }
        transport, calls = recording_transport(
            lambda request: httpx.Response(200, json={"records": [record]}))
        client = BMCClient(api_key="key", transport=transport)
        filters = AdapterFilters(domain=MedicalDomain.CARDIOVASCULAR,
                                 scoring_query="aspirin cardiovascular prevention")

        result = asyncio.run(client.search("aspirin cardiovascular prevention", filters))

        assert len(calls) == 1
        q = calls[0].url.params["q"]
        for journal in client.journals_for(MedicalDomain.CARDIOVASCULAR):
            assert f'journal:"{journal}"' in q
        assert " OR " in q
        assert len(result) == 1
        assert result.payload[0].is_open_access

    def test_bmc_duplicate_records_collapse(self):
        record = {"title": "Aspirin trial", "doi": "10.1186/dup", "publicationName": "BMC Cancer"}
        transport, calls = recording_transport(
            lambda request: httpx.Response(200, json={"records": [record, dict(record)]}))
        result = asyncio.run(BMCClient(api_key="key", transport=transport).search("aspirin"))
        assert len(result) == 1

    def test_bmc_repeated_searches_use_one_slot_each(self):
        transport, calls = recording_transport(lambda request: httpx.Response(200, json={"records": []}))
        client = BMCClient(api_key="key", transport=transport)
        client.limiter = WindowRateLimiter("BMC", max_requests=6, clock=lambda: 0.0)

        for _ in range(6):
            asyncio.run(client.search("aspirin", AdapterFilters(domain=MedicalDomain.ALL)))

        assert len(calls) == 6
        assert client.limiter.remaining == 0
        with pytest.raises(RateLimitExceeded):
            asyncio.run(client.search("aspirin", AdapterFilters(domain=MedicalDomain.ALL)))
        assert len(calls) == 6

    def test_bmc_http_error_returns_empty(self):
        transport, _ = recording_transport(lambda request: httpx.Response(503))
        result = asyncio.run(BMCClient(api_key="key", transport=transport).search("aspirin"))
        assert len(result) == 0

    def test_trip_parses_xml_documents(self):
        xml = b"""<documents>
          <document>
            <title>Aspirin for cardiovascular prevention: Cochrane systematic review</title>
            <description>Systematic review of aspirin in cardiovascular prevention.</description>
            <category>Systematic Reviews</category>
            <publication>Cochrane</publication>
            <pubDate>2021-04-01</pubDate>
            <doi>10.1002/14651858.CD000001</doi>
            <link>https://example.org/trip/1</link>
          </document>
          <document>
            <title>Aspirin prevention expert commentary</title>
            <description>Editorial opinion on aspirin.</description>
            <category>Editorial</category>
            <publication>Other</publication>
            <pubDate>2021-04-01</pubDate>
          </document>
        </documents>"""
        transport, calls = recording_transport(lambda request: httpx.Response(200, content=xml))
        client = TRIPClient(api_key="key", transport=transport)

        result = asyncio.run(client.search("aspirin cardiovascular prevention",
                                           AdapterFilters(scoring_query="aspirin cardiovascular prevention")))

        assert calls[0].url.params["key"] == "key"
        assert [s.raw_study_type for s in result.payload][0] == "Systematic Review"
        assert result.payload[0].quality_score > result.payload[1].quality_score
