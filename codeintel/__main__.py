from codeintel.main import main

raise SystemExit(main())
