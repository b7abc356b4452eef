from bs4 import BeautifulSoup

from page_loader import collect_assets, is_local

PAGE = 'https://h/x'


def test_is_local_same_origin_rules():
    assert is_local('/a.png', PAGE)
    assert is_local('https://h/a.png', PAGE)
    assert not is_local('https://other/a.png', PAGE)


def test_is_local_relative_and_protocol_relative():
    assert is_local('img/a.png', PAGE)
    assert is_local('//h/a.png', PAGE)
    assert not is_local('//cdn.other/a.png', PAGE)
    # same host over another scheme still counts as local
    assert is_local('http://h/a.png', PAGE)


def test_is_local_rejects_unfetchable_values():
    for value in ('', '   ', '#top', 'data:image/png;base64,AAAA', 'mailto:a@h', 'javascript:void(0)'):
        assert not is_local(value, PAGE), value


def test_collect_assets_in_document_order():
    html = '''
    <html><head>
      <link rel="stylesheet" href="/a.css">
      <script src="https://cdn.other/lib.js"></script>
    </head><body>
      <img src="/p.png">
      <img alt="no source">
      <script>inline()</script>
      <script src="app.js"></script>
      <video src="/movie.mp4"></video>
      <a href="/about">about</a>
    </body></html>
    '''
    soup = BeautifulSoup(html, 'html.parser')
    assets = collect_assets(soup, 'https://h/dir/page')
    assert [a.url for a in assets] == [
        'https://h/a.css',
        'https://h/p.png',
        'https://h/dir/app.js',
    ]
    assert [(a.kind, a.attr, a.raw) for a in assets] == [
        ('link', 'href', '/a.css'),
        ('img', 'src', '/p.png'),
        ('script', 'src', 'app.js'),
    ]


def test_collect_assets_empty_page():
    soup = BeautifulSoup('<p>nothing here</p>', 'html.parser')
    assert collect_assets(soup, PAGE) == []
