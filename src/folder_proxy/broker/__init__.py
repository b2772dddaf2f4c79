"""File-mediated request/response broker.

Why a folder and not a socket?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The two halves of the proxy run on hosts with no network path between them
(for example a laptop and a Remote Desktop session).  The only thing both can
see is a mapped drive, so the directory *is* the queue:

- ``requests/<id>.json`` is written once by the front and rewritten only by
  the worker that holds ``requests/<id>.json.lock``.
- ``responses/<id>.json`` is written by the worker, and
  ``responses/<id>.json.done`` is created afterwards as the commit point.
- Lock and completion markers rely on exclusive-create (``O_EXCL``), the one
  atomic primitive every shared filesystem offers.

The front polls for the completion marker; the back polls for new request
files and executes them through a bounded thread pool.
"""
