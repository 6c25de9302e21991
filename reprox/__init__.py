"""reprox: edge controller for a single Docker host.

Watches running containers labelled ``reprox.host=<hostname>`` and keeps
nginx in step with them:
 - one HTTP->HTTPS redirect and one TLS server block per hostname
 - a self-signed placeholder certificate the moment a hostname appears
 - trusted certificates from certbot, requested and renewed in the background
 - reloads only when the route table actually changed
"""
