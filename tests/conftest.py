import pytest

NEWSML_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<NewsML Version="1.2">
  <NewsItem>
    <Identification>
      <NewsIdentifier>
        <ProviderId>example.com</ProviderId>
        <DateId>20210501</DateId>
        <NewsItemId>{item_id}</NewsItemId>
      </NewsIdentifier>
    </Identification>
    <NewsManagement>
      <FirstCreated>20210501T101500</FirstCreated>
      <ThisRevisionCreated>20210502T080000</ThisRevisionCreated>
      <Status FormalName="Usable"/>
      <Urgency FormalName="3"/>
    </NewsManagement>
    <NewsComponent>
      <Role FormalName="Main"/>
      <NewsComponent>
        <Role FormalName="PICTURE"/>
        <Comment><![CDATA[Crowds gather on the square]]></Comment>
        <NewsLines>
          <HeadLine>{headline}</HeadLine>
          <ByLine>Jane Doe</ByLine>
          <DateLine>PARIS, May 1</DateLine>
          <CreditLine>{credit}</CreditLine>
          <SlugLine>may-day</SlugLine>
          <KeywordLine>protest</KeywordLine>
          <KeywordLine>labour</KeywordLine>
        </NewsLines>
        <AdministrativeMetadata>
          <Property FormalName="Edition" Value="Morning"/>
          <Property FormalName="PageNumber" Value="3"/>
        </AdministrativeMetadata>
        <DescriptiveMetadata>
          <Language FormalName="en"/>
          <SubjectCode><Subject FormalName="11000000"/></SubjectCode>
          <Property FormalName="Location">
            <Property FormalName="Country" Value="France"/>
            <Property FormalName="City" Value="Paris"/>
          </Property>
        </DescriptiveMetadata>
        <UsageRights>
          <UsageType>Editorial</UsageType>
          <RightsHolder>Example News</RightsHolder>
        </UsageRights>
        <ContentItem Href="{href}">
          <MediaType FormalName="Picture"/>
          <Characteristics>
            <SizeInBytes>{size}</SizeInBytes>
            <Property FormalName="width" Value="{width}"/>
            <Property FormalName="height" Value="{height}"/>
          </Characteristics>
        </ContentItem>
      </NewsComponent>
    </NewsComponent>
  </NewsItem>
</NewsML>
"""


def render_newsml(
    *,
    item_id="item-1",
    headline="May Day march",
    credit="Staff Photographer",
    href="photo.jpg",
    size="2048",
    width="1200",
    height="800",
):
    return NEWSML_TEMPLATE.format(
        item_id=item_id,
        headline=headline,
        credit=credit,
        href=href,
        size=size,
        width=width,
        height=height,
    )


@pytest.fixture
def newsml():
    return render_newsml


@pytest.fixture
def picture_archive(tmp_path, newsml):
    """A city/year/month tree with XML files and the media they reference."""
    root = tmp_path / "archive"
    xml_dir = root / "Paris" / "2021" / "05" / "xml"
    media_dir = root / "Paris" / "2021" / "05" / "media"
    xml_dir.mkdir(parents=True)
    media_dir.mkdir(parents=True)

    (xml_dir / "one.xml").write_text(
        newsml(item_id="one", href="one.jpg"), encoding="utf-8"
    )
    (media_dir / "one.jpg").write_bytes(b"x" * 4096)
    (xml_dir / "two.xml").write_text(
        newsml(item_id="two", href="two.jpg", credit="iStock"), encoding="utf-8"
    )
    (media_dir / "two.jpg").write_bytes(b"y" * 1024)
    (xml_dir / "three.xml").write_text(
        newsml(item_id="three", href="missing.jpg"), encoding="utf-8"
    )
    return root
