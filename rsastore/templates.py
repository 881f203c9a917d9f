from jinja2 import Environment, DictLoader, select_autoescape

from .helpers import format_currency


TEMPLATES = {
    "email_invoice.html": """
<html>
<body style="font-family: Arial, sans-serif; padding: 24px;">
  <h2>Pembayaran Berhasil</h2>
  <p>Terima kasih telah berbelanja di <strong>{{ store_name }}</strong>.</p>
  <table cellpadding="4">
    <tr><td>Invoice</td><td><strong>{{ order.invoice_number }}</strong></td></tr>
    <tr><td>Produk</td><td>{{ order.product_name }}</td></tr>
    <tr><td>Total</td><td>{{ order.total_amount | rupiah }}</td></tr>
  </table>
  <p><a href="{{ download_link }}">Download produk Anda</a></p>
  <p style="color:#666">Link berlaku selama {{ expiry_minutes }} menit.
  Link baru dapat diminta lewat halaman Invoice Recovery.</p>
</body>
</html>
""",
    "email_download.html": """
<html>
<body style="font-family: Arial, sans-serif; padding: 24px;">
  <h2>Link Download Baru</h2>
  <p>Invoice <strong>{{ order.invoice_number }}</strong> ({{ order.product_name }})</p>
  <p><a href="{{ download_link }}">Download produk Anda</a></p>
  <p style="color:#666">Link berlaku selama {{ expiry_minutes }} menit.</p>
</body>
</html>
""",
    "whatsapp_paid.txt": (
        "🎉 *PEMBAYARAN BERHASIL!*\n\n"
        "✅ Pesanan Anda telah dikonfirmasi\n\n"
        "📋 *DETAIL PESANAN*\n"
        "🧾 Invoice: *{{ order.invoice_number }}*\n"
        "📦 Produk: {{ order.product_name }}\n"
        "💰 Total: {{ order.total_amount | rupiah }}\n\n"
        "📥 *LINK DOWNLOAD:*\n"
        "{{ download_link }}\n\n"
        "⏰ Link berlaku selama {{ expiry_minutes }} menit.\n"
        "{% if order.customer_email %}"
        "📧 Invoice juga telah dikirim ke email Anda.\n\n"
        "{% endif %}"
        "Terima kasih telah berbelanja! 🙏"
    ),
    "expired.html": """
<!doctype html>
<html>
<head><title>Link Download Telah Kedaluwarsa</title></head>
<body style="font-family: Arial, sans-serif; padding: 24px;">
  <h1>Link Download Telah Kedaluwarsa</h1>
  <p>Maaf, link download yang Anda akses sudah tidak berlaku lagi.</p>
  <p>Link download berlaku {{ expiry_minutes }} menit sejak diterbitkan.</p>
  <p>Minta link baru dengan nomor invoice dan kontak yang Anda gunakan
  saat checkout di halaman <a href="/recover">Invoice Recovery</a>.</p>
</body>
</html>
""",
}

env = Environment(
    loader=DictLoader(TEMPLATES),
    autoescape=select_autoescape(["html"]),
)
env.filters["rupiah"] = format_currency


def render(name: str, **ctx) -> str:
    return env.get_template(name).render(**ctx)
